"""
Derivation Descriptor Builder - transcode parameters for proxy files.

Video proxies are made by ffmpeg: scaled to the proxy resolution, every
frame a keyframe for fast scrubbing, with the source's color range and
colorspace tagged through. Still-image proxies are rendered by melt.

Both request builders create the pending marker before returning, so the
marker exists before the job can be submitted.
"""

import logging
from pathlib import Path
from typing import List, Optional, Tuple

from .actions import CompletionAction, FinalizeAction, ReplaceAction
from .config import ProxySettings
from .locator import resolution, round_half_up, touch_pending
from .models import Clip, DerivationRequest, ScanMode

logger = logging.getLogger(__name__)

VAAPI_CODECS = ('hevc_vaapi', 'h264_vaapi')
HARDWARE_UPLOAD_FILTERS = ',format=nv12,hwupload'

# (primaries, transfer, matrix) by MLT colorspace code
_COLORSPACES = {
    170: ('smpte170m', 'smpte170m', 'smpte170m'),
    240: ('smpte240m', 'smpte240m', 'smpte240m'),
    470: ('bt470bg', 'bt470bg', 'bt470bg'),
}
_COLORSPACE_601 = ('smpte170m', 'smpte170m', 'smpte170m')
_COLORSPACE_601_PAL = ('bt470bg', 'smpte170m', 'bt470bg')
_COLORSPACE_DEFAULT = ('bt709', 'bt709', 'bt709')

_VAAPI_DEVICE = ['-init_hw_device', 'vaapi=vaapi0:,connection_type=x11',
                 '-filter_hw_device', 'vaapi0']

# First available encoder wins
_HARDWARE_ENCODERS = (
    ('hevc_nvenc', ['-codec:v', 'hevc_nvenc', '-rc', 'constqp', '-vglobal_quality', '37']),
    ('hevc_qsv', ['-load_plugin', 'hevc_hw', '-codec:v', 'hevc_qsv',
                  '-global_quality:v', '36', '-look_ahead', '1']),
    ('hevc_amf', ['-codec:v', 'hevc_amf', '-rc', '1', '-qp_i', '32', '-qp_p', '32']),
    ('hevc_vaapi', _VAAPI_DEVICE + ['-codec:v', 'hevc_vaapi', '-qp', '37']),
    ('h264_vaapi', _VAAPI_DEVICE + ['-codec:v', 'h264_vaapi', '-qp', '30']),
    ('hevc_videotoolbox', ['-codec:v', 'hevc_videotoolbox', '-b:v', '2M']),
)
_SOFTWARE_ENCODER = ['-codec:v', 'libx264', '-preset', 'veryfast', '-crf', '23']


# ============================================================================
# VIDEO RULES
# ============================================================================

def is_full_range(clip: Clip) -> bool:
    """Whether the clip's active video stream uses full (JPEG) range."""
    full = clip.get('meta.media.color_range') == 'full'
    video_index = clip.get_int('video_index')
    for i in range(clip.get_int('meta.media.nb_streams')):
        if clip.get(f'meta.media.{i}.stream.type') != 'video':
            continue
        if i == video_index:
            pix_fmt = clip.get(f'meta.media.{i}.codec.pix_fmt') or ''
            if pix_fmt.startswith('yuvj') or 'gbr' in pix_fmt or 'rgb' in pix_fmt:
                full = True
            break
    return full


def stream_map_args(clip: Clip) -> List[str]:
    """Map video and audio in source order; data, subtitles and attachments are dropped."""
    if clip.get_int('video_index') < clip.get_int('audio_index'):
        return ['-map', '0:v?', '-map', '0:a?']
    return ['-map', '0:a?', '-map', '0:v?']


def video_filter_chain(
    scan_mode: ScanMode,
    height: int,
    full_range: bool,
    hardware_upload: bool = False,
) -> str:
    """Build the single ``-vf`` expression: deinterlace, scale, range, upload."""
    if scan_mode == ScanMode.AUTOMATIC:
        filters = 'yadif=deint=interlaced,'
    elif scan_mode == ScanMode.INTERLACED_TOP_FIELD_FIRST:
        filters = 'yadif=parity=tff,'
    elif scan_mode == ScanMode.INTERLACED_BOTTOM_FIELD_FIRST:
        filters = 'yadif=parity=bff,'
    else:
        filters = ''
    filters += f'scale=width=-2:height={height}'
    if full_range:
        filters += ':in_range=full:out_range=full'
    else:
        filters += ':in_range=mpeg:out_range=mpeg'
    if hardware_upload:
        filters += HARDWARE_UPLOAD_FILTERS
    return filters


def colorspace_args(colorspace: int, height: int) -> List[str]:
    """Primaries/transfer/matrix tags for an MLT colorspace code."""
    if colorspace == 601:
        triplet = _COLORSPACE_601_PAL if height == 576 else _COLORSPACE_601
    else:
        triplet = _COLORSPACES.get(colorspace, _COLORSPACE_DEFAULT)
    primaries, transfer, matrix = triplet
    return ['-color_primaries', primaries, '-color_trc', transfer, '-colorspace', matrix]


def encoder_args(settings: ProxySettings) -> List[str]:
    """Pick the video encoder: first available hardware encoder, else libx264."""
    if settings.use_hardware:
        for codec, args in _HARDWARE_ENCODERS:
            if codec in settings.hardware_codecs:
                return list(args)
    return list(_SOFTWARE_ENCODER)


def needs_hardware_upload(settings: ProxySettings) -> bool:
    return settings.use_hardware and any(c in settings.hardware_codecs for c in VAAPI_CODECS)


def build_video_args(
    clip: Clip,
    resource: str,
    output_path: Path,
    settings: ProxySettings,
    full_range: bool,
    scan_mode: ScanMode = ScanMode.AUTOMATIC,
    aspect_ratio: Optional[Tuple[int, int]] = None,
) -> List[str]:
    """
    Build the ffmpeg arguments for a video proxy.

    Args:
        clip: Source producer with probed ``meta.media.*`` metadata
        resource: Path of the original media
        output_path: Pending proxy file ffmpeg writes to
        settings: Proxy settings snapshot
        full_range: Source uses full (JPEG) color range
        scan_mode: Field order; AUTOMATIC only deinterlaces flagged frames
        aspect_ratio: Optional display aspect override (num, den)

    Returns:
        Argument list, without the program name
    """
    args = ['-loglevel', 'verbose', '-i', resource, '-max_muxing_queue_size', '9999']
    args += stream_map_args(clip)
    args += ['-map_metadata', '0', '-ignore_unknown']
    args += ['-vf', video_filter_chain(
        scan_mode, resolution(settings), full_range, needs_hardware_upload(settings))]
    args += ['-color_range', 'jpeg' if full_range else 'mpeg']
    args += colorspace_args(clip.get_int('meta.media.colorspace'),
                            clip.get_int('meta.media.height'))
    if aspect_ratio and aspect_ratio[0] and aspect_ratio[1]:
        args += ['-aspect', f'{aspect_ratio[0]}:{aspect_ratio[1]}']
    args += ['-f', 'mp4', '-codec:a', 'ac3', '-b:a', '256k']
    args += ['-pix_fmt', 'yuv420p']
    args += encoder_args(settings)
    args += ['-g', '1', '-bf', '0']
    args += ['-y', str(output_path)]
    return args


# ============================================================================
# IMAGE RULES
# ============================================================================

def build_image_args(
    clip: Clip,
    resource: str,
    output_path: Path,
    settings: ProxySettings,
) -> List[str]:
    """Build the melt arguments for a still-image proxy.

    Width follows the source aspect ratio; without a usable source height
    the proxy is square.
    """
    height = resolution(settings)
    source_width = clip.get_double('meta.media.width')
    source_height = clip.get_double('meta.media.height')
    if source_width > 0 and source_height > 0:
        width = round_half_up(source_width / source_height * height)
    else:
        width = height
    return [
        '-verbose', '-profile', 'square_pal',
        resource, 'out=0', '-consumer',
        f'avformat:{output_path}',
        f'width={width}',
        f'height={height}',
        'pix_fmt=yuvj422p', 'color_range=full',
    ]


# ============================================================================
# REQUESTS
# ============================================================================

def _completion_action(
    resource: str,
    pending_path: Path,
    identity: str,
    clip: Clip,
    replace: bool,
) -> CompletionAction:
    if replace:
        return ReplaceAction(resource, pending_path, identity, [clip])
    return FinalizeAction(pending_path)


def _label(resource: str) -> str:
    return f"Make proxy for {Path(resource).name}"


def make_video_request(
    clip: Clip,
    resource: str,
    identity: str,
    pending_path: Path,
    settings: ProxySettings,
    full_range: bool,
    scan_mode: ScanMode = ScanMode.AUTOMATIC,
    aspect_ratio: Optional[Tuple[int, int]] = None,
    replace: bool = False,
) -> Optional[DerivationRequest]:
    """Mark the proxy pending and describe the ffmpeg job that makes it.

    Returns None when the pending marker cannot be created.
    """
    if not touch_pending(pending_path):
        return None
    args = build_video_args(clip, resource, pending_path, settings,
                            full_range, scan_mode, aspect_ratio)
    return DerivationRequest(
        resource=resource,
        args=tuple(args),
        output_path=pending_path,
        label=_label(resource),
        completion_action=_completion_action(resource, pending_path, identity, clip, replace),
        program='ffmpeg',
    )


def make_image_request(
    clip: Clip,
    resource: str,
    identity: str,
    pending_path: Path,
    settings: ProxySettings,
    replace: bool = False,
) -> Optional[DerivationRequest]:
    """Mark the proxy pending and describe the melt job that makes it."""
    if not touch_pending(pending_path):
        return None
    args = build_image_args(clip, resource, pending_path, settings)
    return DerivationRequest(
        resource=resource,
        args=tuple(args),
        output_path=pending_path,
        label=_label(resource),
        completion_action=_completion_action(resource, pending_path, identity, clip, replace),
        program='melt',
    )
