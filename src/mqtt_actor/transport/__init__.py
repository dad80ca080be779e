"""
Transports connect the actor core to a broker. `base` defines the contract,
`paho` implements it with paho-mqtt.
"""
