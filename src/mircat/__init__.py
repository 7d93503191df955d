"""
mircat - TCP/UDP tunnel relay.

A server exposes public TCP/UDP endpoints; a client dials out to the server
over a single control channel and forwards each relayed connection or
datagram flow to a destination only it can reach.
"""

__version__ = "0.3.0"
