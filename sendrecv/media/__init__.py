"""Media engine interface.

The GStreamer implementation lives in :mod:`sendrecv.media.gst_engine` and is
imported on demand because it needs the GStreamer runtime.
"""

__all__ = [
    "MediaEngine",
    "MediaEngineBase",
    "MediaEvent",
    "MediaEventType",
]

from sendrecv.media.engine_base import MediaEngine, MediaEngineBase, MediaEvent, MediaEventType
