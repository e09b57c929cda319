"""Tests for mltproxy.descriptor: ffmpeg/melt arguments for proxy jobs."""

import pytest

from mltproxy.actions import FinalizeAction, ReplaceAction
from mltproxy.config import ProxySettings
from mltproxy.descriptor import (
    build_image_args,
    build_video_args,
    colorspace_args,
    encoder_args,
    is_full_range,
    make_image_request,
    make_video_request,
    stream_map_args,
    video_filter_chain,
)
from mltproxy.models import ScanMode, make_clip


def _video_clip(**extra):
    props = {
        "mlt_service": "avformat",
        "resource": "/media/a.mov",
        "meta.media.width": 1920,
        "meta.media.height": 1080,
        "meta.media.colorspace": 709,
        "video_index": 0,
        "audio_index": 1,
    }
    props.update(extra)
    return make_clip(props)


def _vf(args):
    return args[args.index("-vf") + 1]


class TestFilterChain:
    def test_automatic_has_no_forced_parity(self):
        chain = video_filter_chain(ScanMode.AUTOMATIC, 540, False)
        assert "parity" not in chain
        assert chain.startswith("yadif=deint=interlaced,")

    def test_top_field_first(self):
        chain = video_filter_chain(ScanMode.INTERLACED_TOP_FIELD_FIRST, 540, False)
        assert "yadif=parity=tff" in chain

    def test_bottom_field_first(self):
        chain = video_filter_chain(ScanMode.INTERLACED_BOTTOM_FIELD_FIRST, 540, False)
        assert "yadif=parity=bff" in chain

    def test_progressive_has_no_deinterlace(self):
        chain = video_filter_chain(ScanMode.PROGRESSIVE, 540, False)
        assert chain == "scale=width=-2:height=540:in_range=mpeg:out_range=mpeg"

    def test_full_range(self):
        chain = video_filter_chain(ScanMode.PROGRESSIVE, 540, True)
        assert chain.endswith(":in_range=full:out_range=full")

    def test_hardware_upload(self):
        chain = video_filter_chain(ScanMode.PROGRESSIVE, 540, False, True)
        assert chain.endswith(",format=nv12,hwupload")


class TestColorspace:
    @pytest.mark.parametrize("code,height,expected", [
        (601, 576, ["bt470bg", "smpte170m", "bt470bg"]),
        (601, 480, ["smpte170m", "smpte170m", "smpte170m"]),
        (170, 480, ["smpte170m", "smpte170m", "smpte170m"]),
        (240, 1035, ["smpte240m", "smpte240m", "smpte240m"]),
        (470, 576, ["bt470bg", "bt470bg", "bt470bg"]),
        (709, 1080, ["bt709", "bt709", "bt709"]),
        (0, 0, ["bt709", "bt709", "bt709"]),
    ])
    def test_triplets(self, code, height, expected):
        args = colorspace_args(code, height)
        assert args[0::2] == ["-color_primaries", "-color_trc", "-colorspace"]
        assert args[1::2] == expected


class TestFullRange:
    def test_color_range_property(self):
        assert is_full_range(_video_clip(**{"meta.media.color_range": "full"}))

    def test_limited_by_default(self):
        assert not is_full_range(_video_clip())

    @pytest.mark.parametrize("pix_fmt,expected", [
        ("yuvj420p", True),
        ("gbrp", True),
        ("rgb24", True),
        ("yuv420p", False),
    ])
    def test_pix_fmt_of_active_stream(self, pix_fmt, expected):
        clip = _video_clip(**{
            "meta.media.nb_streams": 2,
            "meta.media.0.stream.type": "video",
            "meta.media.0.codec.pix_fmt": pix_fmt,
            "meta.media.1.stream.type": "audio",
        })
        assert is_full_range(clip) == expected

    def test_inactive_stream_ignored(self):
        clip = _video_clip(**{
            "video_index": 1,
            "meta.media.nb_streams": 2,
            "meta.media.0.stream.type": "video",
            "meta.media.0.codec.pix_fmt": "yuvj420p",
            "meta.media.1.stream.type": "video",
            "meta.media.1.codec.pix_fmt": "yuv420p",
        })
        assert not is_full_range(clip)


class TestEncoder:
    def test_software_default(self):
        assert encoder_args(ProxySettings()) == [
            "-codec:v", "libx264", "-preset", "veryfast", "-crf", "23"]

    def test_hardware_not_used_when_disabled(self):
        settings = ProxySettings(hardware_codecs=("hevc_nvenc",))
        assert "libx264" in encoder_args(settings)

    def test_first_available_hardware_encoder(self):
        settings = ProxySettings(use_hardware=True,
                                 hardware_codecs=("h264_vaapi", "hevc_qsv"))
        args = encoder_args(settings)
        assert "hevc_qsv" in args
        assert "h264_vaapi" not in args

    def test_no_matching_hardware_encoder(self):
        settings = ProxySettings(use_hardware=True, hardware_codecs=("unknown",))
        assert "libx264" in encoder_args(settings)


class TestVideoArgs:
    def test_stream_order(self):
        assert stream_map_args(_video_clip()) == ["-map", "0:v?", "-map", "0:a?"]
        clip = _video_clip(video_index=1, audio_index=0)
        assert stream_map_args(clip) == ["-map", "0:a?", "-map", "0:v?"]

    def test_default_resolution(self, tmp_path):
        args = build_video_args(_video_clip(), "/media/a.mov", tmp_path / "H.pending.mp4",
                                ProxySettings(), False)
        assert "height=540" in _vf(args)

    def test_configured_resolution(self, tmp_path):
        args = build_video_args(_video_clip(), "/media/a.mov", tmp_path / "H.pending.mp4",
                                ProxySettings(preview_scale=720), False)
        assert "height=720" in _vf(args)
        assert "height=540" not in " ".join(args)

    def test_layout(self, tmp_path):
        out = tmp_path / "H.pending.mp4"
        args = build_video_args(_video_clip(), "/media/a.mov", out, ProxySettings(), False)
        assert args[:5] == ["-loglevel", "verbose", "-i", "/media/a.mov", "-max_muxing_queue_size"]
        assert args[-6:] == ["-g", "1", "-bf", "0", "-y", str(out)]
        assert args[args.index("-color_range") + 1] == "mpeg"
        assert args[args.index("-pix_fmt") + 1] == "yuv420p"
        assert "-aspect" not in args

    def test_full_range_tagged(self, tmp_path):
        args = build_video_args(_video_clip(), "/media/a.mov", tmp_path / "o.mp4",
                                ProxySettings(), True)
        assert args[args.index("-color_range") + 1] == "jpeg"

    def test_aspect_ratio(self, tmp_path):
        args = build_video_args(_video_clip(), "/media/a.mov", tmp_path / "o.mp4",
                                ProxySettings(), False, aspect_ratio=(16, 9))
        assert args[args.index("-aspect") + 1] == "16:9"

    def test_vaapi_adds_upload(self, tmp_path):
        settings = ProxySettings(use_hardware=True, hardware_codecs=("hevc_vaapi",))
        args = build_video_args(_video_clip(), "/media/a.mov", tmp_path / "o.mp4",
                                settings, False)
        assert _vf(args).endswith(",format=nv12,hwupload")
        assert "-init_hw_device" in args


class TestImageArgs:
    def test_width_follows_aspect(self, tmp_path):
        clip = make_clip({"mlt_service": "qimage", "meta.media.width": 4000,
                          "meta.media.height": 3000})
        args = build_image_args(clip, "/media/p.jpg", tmp_path / "H.pending.jpg",
                                ProxySettings())
        assert "width=720" in args
        assert "height=540" in args
        assert f"avformat:{tmp_path / 'H.pending.jpg'}" in args

    def test_square_without_source_size(self, tmp_path):
        clip = make_clip({"mlt_service": "qimage"})
        args = build_image_args(clip, "/media/p.jpg", tmp_path / "H.pending.jpg",
                                ProxySettings())
        assert "width=540" in args

    def test_layout(self, tmp_path):
        clip = make_clip({"mlt_service": "pixbuf"})
        args = build_image_args(clip, "/media/p.png", tmp_path / "o.jpg", ProxySettings())
        assert args[:6] == ["-verbose", "-profile", "square_pal", "/media/p.png", "out=0", "-consumer"]
        assert args[-2:] == ["pix_fmt=yuvj422p", "color_range=full"]


class TestRequests:
    def test_video_request_marks_pending_first(self, tmp_path):
        pending = tmp_path / "proxies" / "H.pending.mp4"
        request = make_video_request(_video_clip(), "/media/a.mov", "H", pending,
                                     ProxySettings(), False)
        assert pending.is_file()
        assert request.program == "ffmpeg"
        assert request.output_path == pending
        assert request.label == "Make proxy for a.mov"
        assert isinstance(request.completion_action, FinalizeAction)

    def test_replace_request(self, tmp_path):
        clip = _video_clip()
        pending = tmp_path / "H.pending.mp4"
        request = make_video_request(clip, "/media/a.mov", "H", pending,
                                     ProxySettings(), False, replace=True)
        action = request.completion_action
        assert isinstance(action, ReplaceAction)
        assert action.clips == [clip]
        assert action.original_resource == "/media/a.mov"

    def test_image_request(self, tmp_path):
        pending = tmp_path / "H.pending.jpg"
        clip = make_clip({"mlt_service": "qimage"})
        request = make_image_request(clip, "/media/p.jpg", "H", pending, ProxySettings())
        assert request.program == "melt"
        assert request.argv[0] == "melt"
        assert pending.is_file()

    def test_marker_failure_returns_none(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        request = make_video_request(_video_clip(), "/media/a.mov", "H",
                                     blocker / "H.pending.mp4", ProxySettings(), False)
        assert request is None
