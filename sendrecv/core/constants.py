"""Signalling protocol and pipeline constants."""


class ProtocolConstants:
    """Literal messages exchanged with the signalling server."""

    # Requests (client -> server)
    REGISTER_PREFIX = "HELLO"     # "HELLO <numeric-id>"
    SESSION_PREFIX = "SESSION"    # "SESSION <peer-id>"

    # Replies (server -> client)
    REGISTRATION_ACK = "HELLO"
    SESSION_ACK = "SESSION_OK"
    ERROR_PREFIX = "ERROR"

    # Negotiation payload keys
    SDP_KEY = "sdp"
    ICE_KEY = "ice"

    # Registration id range [min, max)
    ID_MIN = 10
    ID_MAX = 10_000

    # Websocket close codes
    CLOSE_NORMAL = 1000
    CLOSE_ABNORMAL = 1006

    DEFAULT_SERVER = "wss://webrtc.nirbheek.in:8443"


class PipelineConstants:
    """Defaults for the GStreamer send/receive pipeline."""

    WEBRTC_ELEMENT_NAME = "sendrecv"
    STUN_SERVER = "stun://stun.l.google.com:19302"

    VIDEO_PAYLOAD = 96   # VP8
    AUDIO_PAYLOAD = 97   # OPUS

    VIDEO_PATTERN = "ball"
    AUDIO_WAVE = "red-noise"

    REQUIRED_PLUGINS = (
        "opus",
        "vpx",
        "nice",
        "webrtc",
        "dtls",
        "srtp",
        "rtpmanager",
        "videotestsrc",
        "audiotestsrc",
    )
