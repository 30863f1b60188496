"""GStreamer ``webrtcbin`` media engine.

Note: This module requires the GStreamer runtime and PyGObject.

Installation instructions:
1. Ubuntu/Debian:
   apt-get install gir1.2-gstreamer-1.0 gir1.2-gst-plugins-bad-1.0 \
       gstreamer1.0-nice gstreamer1.0-plugins-good gstreamer1.0-plugins-bad
   pip install "webrtc-sendrecv[gst]"

2. macOS with Homebrew:
   brew install gstreamer pygobject3

The module imports without GStreamer so the rest of the package stays usable;
constructing :class:`GstMediaEngine` then fails with ``MediaEngineError``.

Threading: webrtcbin emits its signals and resolves its promises on GStreamer
streaming threads. Nothing here touches call state; every signal is forwarded
to the asyncio loop with ``call_soon_threadsafe``.
"""

import asyncio
import threading
from typing import Optional

import structlog

from sendrecv.core.call_profile import CallProfile
from sendrecv.core.constants import PipelineConstants
from sendrecv.core.errors import MediaEngineError
from sendrecv.media.engine_base import MediaEngineBase, MediaEventType

try:  # availability depends on host environment
    import gi

    gi.require_version("Gst", "1.0")
    gi.require_version("GstSdp", "1.0")
    gi.require_version("GstWebRTC", "1.0")
    from gi.repository import GLib, Gst, GstSdp, GstWebRTC
except (ImportError, ValueError) as exc:
    Gst = None
    _GST_IMPORT_ERROR: Optional[BaseException] = exc
else:
    _GST_IMPORT_ERROR = None


logger = structlog.get_logger(__name__)

_GST_INIT_LOCK = threading.Lock()
_GST_INITIALISED = False


def is_available() -> bool:
    """Check whether the GStreamer bindings could be imported."""
    return Gst is not None


def init_gstreamer() -> None:
    """Initialise GStreamer once per process.

    Raises:
        MediaEngineError: If the GStreamer bindings are missing
    """
    global _GST_INITIALISED

    if Gst is None:
        raise MediaEngineError(f"GStreamer is not available: {_GST_IMPORT_ERROR}")

    with _GST_INIT_LOCK:
        if not _GST_INITIALISED:
            Gst.init(None)
            _GST_INITIALISED = True


def missing_plugins() -> list[str]:
    """Return the required GStreamer plugins missing from the registry."""
    init_gstreamer()
    registry = Gst.Registry.get()
    missing = [
        name for name in PipelineConstants.REQUIRED_PLUGINS
        if registry.find_plugin(name) is None
    ]
    for name in missing:
        logger.error("Required gstreamer plugin not found", plugin=name)
    return missing


def _make(factory: str, name: Optional[str] = None) -> "Gst.Element":
    element = Gst.ElementFactory.make(factory, name)
    if element is None:
        raise MediaEngineError(f"Failed to create GStreamer element '{factory}'")
    return element


def _add_and_link(pipeline: "Gst.Pipeline", elements: list["Gst.Element"]) -> None:
    for element in elements:
        pipeline.add(element)
    for upstream, downstream in zip(elements, elements[1:]):
        if not upstream.link(downstream):
            raise MediaEngineError(
                f"Failed to link {upstream.get_name()} -> {downstream.get_name()}"
            )


class _GLibLoopThread:
    """Runs a GLib main loop so bus watches are dispatched."""

    def __init__(self) -> None:
        self._loop: Optional["GLib.MainLoop"] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._loop = GLib.MainLoop()
        self._thread = threading.Thread(
            target=self._loop.run, name="glib-main-loop", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        if self._loop is not None:
            self._loop.quit()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
        self._loop = None
        self._thread = None


class GstMediaEngine(MediaEngineBase):
    """Send/receive media engine built around ``webrtcbin``.

    Pipeline::

        videotestsrc ! videoconvert ! queue ! vp8enc ! rtpvp8pay ! queue ! sendrecv.
        audiotestsrc ! queue ! audioconvert ! audioresample ! queue ! opusenc
            ! rtpopuspay ! queue ! sendrecv.
        webrtcbin name=sendrecv

    Incoming streams are decoded and rendered on auto sinks.
    """

    def __init__(
        self,
        profile: Optional[CallProfile] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None
    ) -> None:
        """Initialize engine.

        Args:
            profile: Media pipeline settings (defaults when omitted)
            loop: Event loop receiving events (defaults to the running loop)

        Raises:
            MediaEngineError: If GStreamer is not available
        """
        super().__init__(loop=loop)
        init_gstreamer()

        self._profile = profile or CallProfile()
        self._pipeline: Optional["Gst.Pipeline"] = None
        self._webrtc: Optional["Gst.Element"] = None
        self._glib_loop = _GLibLoopThread()

    # ------------------------------------------------------------- lifecycle

    async def start(self) -> None:
        """Build the pipeline and set it to PLAYING."""
        if self._started:
            return
        self.bind_loop()

        try:
            self._pipeline = self._construct_pipeline()
        except MediaEngineError:
            raise
        except Exception as e:
            raise MediaEngineError(f"Failed to set up webrtc: {e}") from e

        webrtc = self._webrtc
        webrtc.connect("on-negotiation-needed", self._on_negotiation_needed)
        webrtc.connect("on-ice-candidate", self._on_ice_candidate)
        webrtc.connect("pad-added", self._on_incoming_stream)

        bus = self._pipeline.get_bus()
        bus.add_signal_watch()
        bus.connect("message::error", self._on_bus_error)
        bus.connect("message::eos", self._on_bus_eos)
        self._glib_loop.start()

        if self._pipeline.set_state(Gst.State.PLAYING) == Gst.StateChangeReturn.FAILURE:
            raise MediaEngineError("Failed to set pipeline to PLAYING")

        self._started = True
        self._logger.info(
            "Media pipeline playing",
            stun_server=self._profile.stun_server,
            video=self._profile.video,
            audio=self._profile.audio
        )

    async def stop(self) -> None:
        """Tear down the pipeline."""
        if self._pipeline is not None:
            bus = self._pipeline.get_bus()
            bus.remove_signal_watch()
            self._pipeline.set_state(Gst.State.NULL)
            self._logger.info("Media pipeline stopped")

        self._glib_loop.stop()
        self._pipeline = None
        self._webrtc = None
        self._started = False
        self.close_events()

    # ----------------------------------------------------------- negotiation

    async def create_offer(self) -> str:
        """Ask webrtcbin for an offer and wait for the promise."""
        webrtc = self._require_webrtc()
        loop = self.bind_loop()
        future: asyncio.Future[str] = loop.create_future()

        promise = Gst.Promise.new_with_change_func(self._on_offer_created, future)
        webrtc.emit("create-offer", None, promise)
        return await future

    def set_local_description(self, sdp: str) -> None:
        """Install the offer as local description."""
        webrtc = self._require_webrtc()
        offer = self._description(GstWebRTC.WebRTCSDPType.OFFER, sdp)
        webrtc.emit("set-local-description", offer, Gst.Promise.new())

    async def set_remote_description(self, sdp: str) -> None:
        """Apply the remote answer and wait until webrtcbin has processed it."""
        webrtc = self._require_webrtc()
        loop = self.bind_loop()
        future: asyncio.Future[None] = loop.create_future()

        answer = self._description(GstWebRTC.WebRTCSDPType.ANSWER, sdp)
        promise = Gst.Promise.new_with_change_func(self._on_remote_description_set, future)
        webrtc.emit("set-remote-description", answer, promise)
        await future

    def add_ice_candidate(self, sdp_mline_index: int, candidate: str) -> None:
        """Hand a remote candidate to webrtcbin."""
        webrtc = self._require_webrtc()
        webrtc.emit("add-ice-candidate", sdp_mline_index, candidate)

    # -------------------------------------------------------------- building

    def _construct_pipeline(self) -> "Gst.Pipeline":
        pipeline = Gst.Pipeline.new(None)
        webrtc = _make("webrtcbin", PipelineConstants.WEBRTC_ELEMENT_NAME)
        pipeline.add(webrtc)
        webrtc.set_property("stun-server", self._profile.stun_server)
        self._webrtc = webrtc

        if self._profile.video:
            self._add_video_source(pipeline, webrtc)
        if self._profile.audio:
            self._add_audio_source(pipeline, webrtc)
        return pipeline

    def _add_video_source(self, pipeline: "Gst.Pipeline", webrtc: "Gst.Element") -> None:
        source = _make("videotestsrc")
        Gst.util_set_object_arg(source, "pattern", self._profile.video_pattern)
        encoder = _make("vp8enc")
        encoder.set_property("deadline", 1)

        chain = [
            source,
            _make("videoconvert"),
            _make("queue"),
            encoder,
            _make("rtpvp8pay"),
            _make("queue"),
        ]
        _add_and_link(pipeline, chain)

        caps = Gst.Caps.from_string(
            "application/x-rtp,media=video,encoding-name=VP8,"
            f"payload={PipelineConstants.VIDEO_PAYLOAD}"
        )
        if not chain[-1].link_filtered(webrtc, caps):
            raise MediaEngineError("Failed to link video branch into webrtcbin")

    def _add_audio_source(self, pipeline: "Gst.Pipeline", webrtc: "Gst.Element") -> None:
        source = _make("audiotestsrc")
        Gst.util_set_object_arg(source, "wave", self._profile.audio_wave)

        chain = [
            source,
            _make("queue"),
            _make("audioconvert"),
            _make("audioresample"),
            _make("queue"),
            _make("opusenc"),
            _make("rtpopuspay"),
            _make("queue"),
        ]
        _add_and_link(pipeline, chain)

        caps = Gst.Caps.from_string(
            "application/x-rtp,media=audio,encoding-name=OPUS,"
            f"payload={PipelineConstants.AUDIO_PAYLOAD}"
        )
        if not chain[-1].link_filtered(webrtc, caps):
            raise MediaEngineError("Failed to link audio branch into webrtcbin")

    def _require_webrtc(self) -> "Gst.Element":
        if self._webrtc is None:
            raise MediaEngineError("Media pipeline is not running")
        return self._webrtc

    @staticmethod
    def _description(sdp_type: "GstWebRTC.WebRTCSDPType", sdp: str) -> "GstWebRTC.WebRTCSessionDescription":
        res, message = GstSdp.SDPMessage.new()
        if res != GstSdp.SDPResult.OK:
            raise MediaEngineError("Failed to allocate SDP message")
        if GstSdp.sdp_message_parse_buffer(sdp.encode("utf-8"), message) != GstSdp.SDPResult.OK:
            raise MediaEngineError("Failed to parse SDP")
        return GstWebRTC.WebRTCSessionDescription.new(sdp_type, message)

    # ------------------------------------------- streaming thread callbacks

    def _on_negotiation_needed(self, _element: "Gst.Element") -> None:
        self.emit_threadsafe(MediaEventType.NEGOTIATION_NEEDED)

    def _on_ice_candidate(self, _element: "Gst.Element", mline_index: int, candidate: str) -> None:
        self.emit_threadsafe(
            MediaEventType.ICE_CANDIDATE,
            sdp_mline_index=int(mline_index),
            candidate=candidate
        )

    def _on_offer_created(self, promise: "Gst.Promise", future: asyncio.Future) -> None:
        reply = promise.get_reply()
        offer = reply.get_value("offer") if reply is not None else None
        if offer is None:
            self._resolve(future, error=MediaEngineError("webrtcbin produced no offer"))
            return
        self._resolve(future, result=offer.sdp.as_text())

    def _on_remote_description_set(self, promise: "Gst.Promise", future: asyncio.Future) -> None:
        reply = promise.get_reply()
        if reply is not None and reply.has_field("error"):
            error = reply.get_value("error")
            self._resolve(
                future,
                error=MediaEngineError(f"Failed to set remote description: {error}")
            )
            return
        self._resolve(future, result=None)

    def _resolve(
        self,
        future: asyncio.Future,
        result: object = None,
        error: Optional[BaseException] = None
    ) -> None:
        def _apply() -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)

        future.get_loop().call_soon_threadsafe(_apply)

    def _on_incoming_stream(self, _element: "Gst.Element", pad: "Gst.Pad") -> None:
        if pad.get_direction() != Gst.PadDirection.SRC:
            return

        pipeline = self._pipeline
        if pipeline is None:
            return

        decodebin = _make("decodebin")
        decodebin.connect("pad-added", self._on_decoded_stream)
        pipeline.add(decodebin)
        decodebin.sync_state_with_parent()
        if pad.link(decodebin.get_static_pad("sink")) != Gst.PadLinkReturn.OK:
            self.emit_threadsafe(
                MediaEventType.ERROR,
                message=f"Failed to link incoming pad {pad.get_name()} to decodebin"
            )

    def _on_decoded_stream(self, _decodebin: "Gst.Element", pad: "Gst.Pad") -> None:
        if not pad.has_current_caps():
            self._logger.warning("Pad has no caps, ignoring", pad=pad.get_name())
            return

        name = pad.get_current_caps().get_structure(0).get_name()
        if name.startswith("video"):
            media = "video"
            chain = [_make("queue"), _make("videoconvert"), _make("autovideosink")]
        elif name.startswith("audio"):
            media = "audio"
            chain = [
                _make("queue"),
                _make("audioconvert"),
                _make("audioresample"),
                _make("autoaudiosink"),
            ]
        else:
            self._logger.info("Unknown pad, ignoring", pad=pad.get_name(), caps=name)
            return

        try:
            _add_and_link(self._pipeline, chain)
            for element in chain:
                element.sync_state_with_parent()
            if pad.link(chain[0].get_static_pad("sink")) != Gst.PadLinkReturn.OK:
                raise MediaEngineError(f"Failed to link decoded {media} pad")
        except MediaEngineError as e:
            self.emit_threadsafe(
                MediaEventType.ERROR,
                message=f"Error adding pad with caps {name}: {e}"
            )
            return

        self.emit_threadsafe(MediaEventType.INCOMING_TRACK, media=media, caps=name)

    # ----------------------------------------------------- GLib loop thread

    def _on_bus_error(self, _bus: "Gst.Bus", message: "Gst.Message") -> None:
        err, debug = message.parse_error()
        self.emit_threadsafe(MediaEventType.ERROR, message=err.message, debug=debug)

    def _on_bus_eos(self, _bus: "Gst.Bus", _message: "Gst.Message") -> None:
        # Live test sources never end, so EOS means the pipeline broke down
        self._logger.warning("Media pipeline reached end-of-stream")
        self.emit_threadsafe(MediaEventType.ERROR, message="Pipeline reached end-of-stream")
