"""WebRTC send/receive peer.

Registers with a signalling server, calls a named peer and negotiates a
send/receive media session through a local GStreamer ``webrtcbin``.
"""

__version__ = "0.1.0"
