"""
blocklistd

Keeps an iptables chain in sync with a threat intelligence drop list
and accepts control commands over a local unix socket.
"""

__version__ = "1.0.0"
