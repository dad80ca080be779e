"""
The actor core: topic matching, the hook table, the connection state
machine, operation correlation and reconnect scheduling. Nothing in here
owns a thread or a socket.
"""
