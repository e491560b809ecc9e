"""
Stream Relay - FFmpeg argument plans per destination

Pure functions: nothing here spawns processes or probes hardware. The
caller decides whether the NVENC path is used.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import urlencode

from streamrelay.models import Destination, EncodingConfig


class OutputProtocol(str, Enum):
    RTMP = "rtmp"  # push: base URL + "/" + stream key, FLV
    SRT = "srt"    # connect: session parameters in the query string, MPEG-TS


# x264 preset name -> NVENC preset (p1 fastest .. p7 slowest)
NVENC_PRESET_MAP = {
    "ultrafast": "p1",
    "superfast": "p2",
    "veryfast": "p3",
    "faster": "p4",
    "fast": "p5",
    "medium": "p5",
    "slow": "p6",
    "slower": "p7",
}
NVENC_DEFAULT_PRESET = "p4"

NVENC_MAX_LOOKAHEAD = 32
X264_MAX_LOOKAHEAD = 60

DEFAULT_BITRATE = 4500
DEFAULT_AUDIO_BITRATE = 160
DEFAULT_PRESET = "veryfast"
DEFAULT_FRAMERATE = 60
DEFAULT_KEYFRAME_INTERVAL = 2
DEFAULT_PROFILE = "high"

DEFAULT_SRT_LATENCY_MS = 200
DEFAULT_SRT_MODE = "caller"

AUDIO_SAMPLE_RATE = "48000"


@dataclass
class EncodingPlan:
    """A fully resolved FFmpeg invocation for one destination."""
    destination_id: str
    args: list[str]
    output_url: str
    output_protocol: OutputProtocol = OutputProtocol.RTMP
    encoder: str = "copy"
    passthrough: bool = True
    gop_size: Optional[int] = None

    def command(self, ffmpeg_path: str = "ffmpeg") -> list[str]:
        return [ffmpeg_path, *self.args]


def output_protocol_for(url: str) -> OutputProtocol:
    """Output protocol is decided by the URL scheme."""
    return OutputProtocol.SRT if url.startswith("srt://") else OutputProtocol.RTMP


def nvenc_preset(preset: Optional[str]) -> str:
    """Translate an x264 preset name to its NVENC equivalent."""
    return NVENC_PRESET_MAP.get(preset or "", NVENC_DEFAULT_PRESET)


def build_output_url(destination: Destination) -> str:
    """Build the final output target for a destination."""
    if output_protocol_for(destination.url) == OutputProtocol.RTMP:
        return f"{destination.url}/{destination.stream_key or ''}"

    params = {}
    if destination.stream_key:
        params["streamid"] = destination.stream_key

    srt = destination.srt_settings
    if srt is not None:
        if srt.latency:
            # SRT expects microseconds
            params["latency"] = str(srt.latency * 1000)
        if srt.passphrase:
            params["passphrase"] = srt.passphrase
        if srt.mode:
            params["mode"] = srt.mode
    else:
        params["latency"] = str(DEFAULT_SRT_LATENCY_MS * 1000)
        params["mode"] = DEFAULT_SRT_MODE

    return f"{destination.url}?{urlencode(params)}"


def _lookahead(encoding: EncodingConfig, framerate: float) -> int:
    # Explicit 0 disables look-ahead; absent means one second of frames
    if encoding.rc_lookahead is None:
        return round(framerate)
    return round(encoding.rc_lookahead)


def _kbps(value: float) -> str:
    """Bitrate argument, without a trailing .0 for whole numbers."""
    if float(value).is_integer():
        return f"{int(value)}k"
    return f"{value}k"


def build_plan(destination: Destination, input_url: str, use_hardware: bool = False) -> EncodingPlan:
    """Build the FFmpeg arguments relaying input_url to a destination."""
    protocol = output_protocol_for(destination.url)
    output_url = build_output_url(destination)
    encoding = destination.encoding
    passthrough = encoding is None or encoding.use_passthrough

    # info level keeps the -stats progress lines on stderr
    args = ["-hide_banner", "-loglevel", "info", "-stats"]

    if passthrough:
        args.extend(["-i", input_url, "-c", "copy"])
        plan = EncodingPlan(
            destination_id=destination.id,
            args=args,
            output_url=output_url,
            output_protocol=protocol,
        )
    else:
        bitrate = encoding.bitrate or DEFAULT_BITRATE
        max_bitrate = encoding.max_bitrate or bitrate
        bufsize = encoding.bufsize or bitrate
        audio_bitrate = encoding.audio_bitrate or DEFAULT_AUDIO_BITRATE
        preset = encoding.preset or DEFAULT_PRESET
        framerate = encoding.framerate or DEFAULT_FRAMERATE
        use_cbr = encoding.cbr is not False
        lookahead = _lookahead(encoding, framerate)
        # -g takes a whole frame count
        gop_size = round((encoding.keyframe_interval or DEFAULT_KEYFRAME_INTERVAL) * framerate)
        profile = encoding.profile or DEFAULT_PROFILE

        if use_hardware:
            args.extend(["-hwaccel", "cuda", "-hwaccel_output_format", "cuda"])
        args.extend(["-i", input_url])

        rate_args = [
            "-b:v", _kbps(bitrate),
            "-maxrate", _kbps(max_bitrate),
            "-bufsize", _kbps(bufsize),
            "-g", str(gop_size),
            "-keyint_min", str(gop_size),
            "-profile:v", profile,
        ]
        audio_args = [
            "-c:a", "aac",
            "-b:a", _kbps(audio_bitrate),
            "-ar", AUDIO_SAMPLE_RATE,
        ]

        if use_hardware:
            encoder = "h264_nvenc"
            args.extend([
                "-c:v", encoder,
                "-preset", nvenc_preset(preset),
                "-tune", "ll",
                "-rc", "cbr",
            ])
            args.extend(rate_args)
            args.extend(["-rc-lookahead", str(min(lookahead, NVENC_MAX_LOOKAHEAD))])
            args.extend(audio_args)
            if encoding.resolution:
                args.extend(["-vf", f"scale_cuda={encoding.resolution}"])
        else:
            encoder = "libx264"
            args.extend(["-c:v", encoder, "-preset", preset])
            args.extend(rate_args)
            args.extend(["-bf", "2"])
            capped = min(lookahead, X264_MAX_LOOKAHEAD)
            if use_cbr:
                args.extend(["-x264-params", f"nal-hrd=cbr:force-cfr=1:rc-lookahead={capped}"])
            elif lookahead > 0:
                args.extend(["-x264-params", f"rc-lookahead={capped}"])
            args.extend(audio_args)
            if encoding.resolution:
                args.extend(["-vf", f"scale={encoding.resolution}"])

        plan = EncodingPlan(
            destination_id=destination.id,
            args=args,
            output_url=output_url,
            output_protocol=protocol,
            encoder=encoder,
            passthrough=False,
            gop_size=gop_size,
        )

    if protocol == OutputProtocol.SRT:
        plan.args.extend(["-f", "mpegts", output_url])
    else:
        plan.args.extend(["-f", "flv", output_url])
    return plan
