"""Tests for mltproxy.manager: deciding and scheduling proxies for clips."""

from pathlib import Path

import pytest

from mltproxy.actions import FinalizeAction, ReplaceAction
from mltproxy.config import ProxySettings
from mltproxy.jobs import JobQueue
from mltproxy.locator import locate
from mltproxy.manager import ProxyManager, original_resource, stored_identity
from mltproxy.models import (
    DISABLE_PROXY_PROPERTY,
    HASH_PROPERTY,
    ORIGINAL_RESOURCE_PROPERTY,
    PROXY_PROPERTY,
    JobOutcome,
    MediaKind,
    ProxyState,
    ScanMode,
    make_clip,
)
from mltproxy.parser import parse_mlt

SAMPLE = Path(__file__).parent.parent / "examples" / "sample.mlt"


class RecordingQueue(JobQueue):
    """Keeps submitted requests instead of running them."""

    def __init__(self):
        self.requests = []

    def add(self, request):
        self.requests.append(request)


def _video_clip(identity="H", width=1920, height=1080, **extra):
    props = {
        "mlt_service": "avformat",
        "resource": "/media/a.mov",
        "meta.media.width": width,
        "meta.media.height": height,
        HASH_PROPERTY: identity,
    }
    props.update(extra)
    return make_clip(props)


@pytest.fixture
def project(tmp_path):
    folder = tmp_path / "project"
    folder.mkdir()
    return folder


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def manager(tmp_path, project, queue):
    return ProxyManager(ProxySettings(folder=str(tmp_path / "global")), queue, project)


class TestHelpers:
    def test_stored_identity(self):
        assert stored_identity(_video_clip("abc")) == "abc"
        assert stored_identity(make_clip()) is None

    def test_original_resource_plain(self):
        assert original_resource(_video_clip()) == "/media/a.mov"

    def test_original_resource_of_proxy(self):
        clip = _video_clip(**{PROXY_PROPERTY: 1, ORIGINAL_RESOURCE_PROPERTY: "/media/orig.mov"})
        assert original_resource(clip) == "/media/orig.mov"

    def test_original_resource_of_timewarp(self):
        clip = make_clip({"mlt_service": "timewarp", "resource": "2:/media/a.mov",
                          "warp_resource": "/media/a.mov"})
        assert original_resource(clip) == "/media/a.mov"


class TestManagerBasics:
    def test_dir_and_resolution(self, manager, project):
        assert manager.dir() == project / "proxies"
        assert manager.resolution() == 540

    def test_locate_requires_identity(self, manager):
        assert manager.locate(_video_clip(identity="")) is None

    def test_locate_requires_media_kind(self, manager):
        assert manager.locate(make_clip({"mlt_service": "color", HASH_PROPERTY: "x"})) is None

    def test_file_states(self, manager, project):
        clip = _video_clip()
        assert not manager.file_exists(clip)
        assert not manager.file_pending(clip)
        (project / "proxies").mkdir(exist_ok=True)
        (project / "proxies" / "H.pending.mp4").write_bytes(b"")
        assert manager.file_pending(clip)
        (project / "proxies" / "H.mp4").write_bytes(b"")
        assert manager.file_exists(clip)

    def test_custom_identity(self, tmp_path, project, queue):
        manager = ProxyManager(ProxySettings(folder=str(tmp_path / "g")), queue, project,
                               identify=lambda clip: "fixed")
        record = manager.locate(make_clip({"mlt_service": "avformat"}))
        assert record.ready_path.name == "fixed.mp4"


class TestGenerate:
    def test_video_proxy_submitted(self, manager, queue, project):
        request = manager.generate_video_proxy(_video_clip(), False, ScanMode.PROGRESSIVE)
        assert queue.requests == [request]
        assert manager.submitted == [request]
        assert request.output_path == project / "proxies" / "H.pending.mp4"
        assert request.output_path.is_file()
        assert isinstance(request.completion_action, FinalizeAction)

    def test_image_proxy_submitted(self, manager, queue):
        clip = make_clip({"mlt_service": "qimage", "resource": "/m/p.jpg", HASH_PROPERTY: "I"})
        request = manager.generate_image_proxy(clip, replace=True)
        assert request.program == "melt"
        assert isinstance(request.completion_action, ReplaceAction)

    def test_no_identity_no_job(self, manager, queue):
        assert manager.generate_video_proxy(_video_clip(identity=""), False) is None
        assert queue.requests == []

    def test_proxy_source_is_original(self, manager):
        clip = _video_clip(**{PROXY_PROPERTY: 1,
                              ORIGINAL_RESOURCE_PROPERTY: "/media/orig.mov"})
        request = manager.generate_video_proxy(clip, False)
        assert request.resource == "/media/orig.mov"
        assert "/media/orig.mov" in request.args


class TestGenerateIfNotExists:
    def test_large_absent_clip_scheduled(self, manager, queue):
        clip = _video_clip()
        assert not manager.generate_if_not_exists(clip)
        assert len(queue.requests) == 1
        assert isinstance(queue.requests[0].completion_action, ReplaceAction)

    def test_second_call_sees_pending(self, manager, queue):
        clip = _video_clip()
        manager.generate_if_not_exists(clip)
        manager.generate_if_not_exists(clip)
        assert len(queue.requests) == 1
        assert manager.file_pending(clip)

    @pytest.mark.parametrize("width,height", [(702, 1080), (1920, 702), (640, 360)])
    def test_small_clip_skipped(self, manager, queue, width, height):
        assert not manager.generate_if_not_exists(_video_clip(width=width, height=height))
        assert queue.requests == []

    def test_threshold_follows_resolution(self, tmp_path, project, queue):
        settings = ProxySettings(folder=str(tmp_path / "g"), preview_scale=360)
        manager = ProxyManager(settings, queue, project)
        manager.generate_if_not_exists(_video_clip(width=640, height=480))
        assert len(queue.requests) == 1
        assert "height=360" in " ".join(queue.requests[0].args)

    def test_disabled_clip_skipped(self, manager, queue):
        clip = _video_clip(**{DISABLE_PROXY_PROPERTY: 1})
        assert not manager.generate_if_not_exists(clip)
        assert queue.requests == []

    def test_ready_proxy_applied(self, manager, queue, project):
        (project / "proxies").mkdir(exist_ok=True)
        ready = project / "proxies" / "H.mp4"
        ready.write_bytes(b"proxy")
        clip = _video_clip()
        assert manager.generate_if_not_exists(clip)
        assert clip.is_proxy
        assert clip.get("resource") == str(ready)
        assert clip.get(ORIGINAL_RESOURCE_PROPERTY) == "/media/a.mov"
        assert queue.requests == []

    def test_image_clip(self, manager, queue):
        clip = make_clip({"mlt_service": "pixbuf", "resource": "/m/p.png",
                          "meta.media.width": 4000, "meta.media.height": 3000,
                          HASH_PROPERTY: "I"})
        manager.generate_if_not_exists(clip)
        assert queue.requests[0].program == "melt"


class TestGenerateAll:
    def test_sample_project(self, tmp_path, queue):
        graph = parse_mlt(str(SAMPLE))
        manager = ProxyManager(ProxySettings(folder=str(tmp_path / "g")), queue, tmp_path)
        clips = manager.generate_if_not_exists_all(graph.root)
        assert [c.id for c in clips] == ["black", "chain0", "producer0", "producer1"]
        assert [r.program for r in queue.requests] == ["ffmpeg", "melt"]
        assert all(isinstance(r.completion_action, FinalizeAction) for r in queue.requests)
        assert all(c.is_proxy for c in clips)

    def test_second_pass_submits_nothing(self, tmp_path, queue):
        graph = parse_mlt(str(SAMPLE))
        manager = ProxyManager(ProxySettings(folder=str(tmp_path / "g")), queue, tmp_path)
        manager.generate_if_not_exists_all(graph.root)
        assert manager.generate_if_not_exists_all(graph.root) == []
        assert len(queue.requests) == 2


class TestEndToEnd:
    def test_finalize_scenario(self, manager, queue, project):
        clip = _video_clip()
        settings = manager.settings
        assert locate("H", MediaKind.VIDEO, settings, project).state == ProxyState.ABSENT

        request = manager.generate_video_proxy(clip, False)
        assert locate("H", MediaKind.VIDEO, settings, project).state == ProxyState.PENDING
        before = dict(clip.properties.items())

        request.output_path.write_bytes(b"transcoded")
        assert request.completion_action.on_complete(JobOutcome(success=True, returncode=0))

        record = locate("H", MediaKind.VIDEO, settings, project)
        assert record.state == ProxyState.READY
        assert record.ready_path == project / "proxies" / "H.mp4"
        assert record.ready_path.read_bytes() == b"transcoded"
        assert dict(clip.properties.items()) == before

    def test_replace_scenario(self, manager, project):
        clip = _video_clip()
        request = manager.generate_video_proxy(clip, False, replace=True)
        assert request.completion_action.on_complete(JobOutcome(success=True))
        assert clip.get("resource") == str(project / "proxies" / "H.mp4")
        assert clip.get(ORIGINAL_RESOURCE_PROPERTY) == "/media/a.mov"


class TestFilterXml:
    def test_delegates_to_rewriter(self, manager, tmp_path):
        source = tmp_path / "edit.mlt"
        source.write_text(
            "<mlt><producer id='p'><property name='shotcut:proxy'>1</property>"
            "<property name='resource'>/p/H.mp4</property>"
            "<property name='shotcut:resource'>/m/a.mov</property></producer></mlt>")
        temp = manager.filter_xml(source, "/m")
        with open(temp, encoding="utf-8") as f:
            assert '<property name="resource">a.mov</property>' in f.read()
