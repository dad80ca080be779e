"""
The outward-facing side of an actor: the mailbox thread and its handle,
an asyncio wrapper, and an optional name registry.
"""
