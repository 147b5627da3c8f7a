import gc
import io
import json
import weakref
import zipfile

import numpy as np
import pytest
from PIL import Image

import batch_renderer
from batch_renderer import (
    CancellationToken,
    CollectionRenderer,
    CollectionRequest,
    format_time,
    render_collection,
    render_preview,
)
from collection_archive import CollectionArchive
from errors import ArchiveWriteFailure, InsufficientCombinationSpace
from conftest import SIZE, FakeLoader


def make_request(config, size, **overrides):
    options = dict(width=SIZE[0], height=SIZE[1], seed=1, layer_timeout=None)
    options.update(overrides)
    return CollectionRequest(size=size, collection=config, **options)


def names(path):
    with zipfile.ZipFile(path) as zf:
        return zf.namelist()


def test_request_validation(foo_config):
    with pytest.raises(ValueError):
        CollectionRequest(size=0, collection=foo_config)
    with pytest.raises(ValueError):
        CollectionRequest(size=1, collection=foo_config, image_format='gif')
    with pytest.raises(ValueError):
        CollectionRequest(size=1, collection=foo_config, workers=0)
    with pytest.raises(ValueError):
        CollectionRequest(size=1, collection=foo_config, width=-1)
    assert CollectionRequest(size=1, collection=foo_config, image_format='jpeg').extension == 'jpg'


def test_full_run_writes_image_and_metadata_per_token(tmp_path, collection_catalog, collection_loader, foo_config):
    destination = tmp_path / 'foo.zip'
    result = render_collection(make_request(foo_config, 100), collection_catalog, collection_loader, destination)

    assert result.archive_path == destination
    assert result.token_count == 100
    assert result.entries_written == 200
    assert result.skipped_tokens == []

    entries = names(destination)
    assert len(entries) == 200
    assert {f"images/{i}.png" for i in range(1, 101)} <= set(entries)
    assert {f"metadata/{i}" for i in range(1, 101)} <= set(entries)

    with zipfile.ZipFile(destination) as zf:
        metadata = json.loads(zf.read('metadata/7'))
        image = Image.open(io.BytesIO(zf.read('images/7.png')))
        keys = {json.dumps(json.loads(zf.read(f"metadata/{i}"))['attributes'][:-1]) for i in range(1, 101)}
    assert metadata['name'] == "Foo #7"
    assert metadata['image'] == "ipfs://CID/7.png"
    assert image.size == SIZE
    assert len(keys) == 100


def test_progress_is_monotonic_and_bounded(tmp_path, collection_catalog, collection_loader, foo_config):
    reports = []
    renderer = CollectionRenderer(make_request(foo_config, 25, batch_size=4), collection_catalog,
                                  collection_loader, tmp_path / 'c.zip',
                                  on_progress=lambda current, total: reports.append((current, total)))
    renderer.run()

    currents = [c for c, _ in reports]
    assert currents == sorted(currents)
    assert currents[-1] == 25
    assert all(total == 25 and current <= total for current, total in reports)
    assert renderer.progress.percentage == 100.0


def test_cancellation_discards_archive_and_releases_buffers(tmp_path, monkeypatch, collection_catalog,
                                                            collection_loader, foo_config):
    live = weakref.WeakSet()
    real_render_token = batch_renderer.render_token

    def tracking_render_token(*args, **kwargs):
        image = real_render_token(*args, **kwargs)
        live.add(image)
        return image

    monkeypatch.setattr(batch_renderer, 'render_token', tracking_render_token)

    token = CancellationToken()
    reports = []

    def on_progress(current, total):
        reports.append(current)
        if current == 40:
            token.cancel()

    destination = tmp_path / 'c.zip'
    result = render_collection(make_request(foo_config, 100, batch_size=1), collection_catalog,
                               collection_loader, destination, on_progress=on_progress, cancel_token=token)

    assert result is None
    assert reports[-1] == 40
    assert list(tmp_path.iterdir()) == []
    gc.collect()
    assert len(live) == 0


def test_cancelled_before_start_returns_none(tmp_path, small_catalog, small_loader, foo_config):
    token = CancellationToken()
    token.cancel()
    result = render_collection(make_request(foo_config, 5), small_catalog, small_loader,
                               tmp_path / 'c.zip', cancel_token=token)
    assert result is None
    assert small_loader.calls == []
    assert list(tmp_path.iterdir()) == []


def test_silhouette_run_writes_reveal_data(tmp_path, collection_catalog, collection_loader, foo_config):
    destination = tmp_path / 's.zip'
    request = make_request(foo_config, 10, silhouette=True, shadow_metadata=True,
                           exclude_categories=('background',))
    result = render_collection(request, collection_catalog, collection_loader, destination)

    assert result.entries_written == 30
    with zipfile.ZipFile(destination) as zf:
        public = json.loads(zf.read('metadata/3'))
        reveal = json.loads(zf.read('reveal_data/3.json'))
        for i in range(1, 11):
            pixels = np.array(Image.open(io.BytesIO(zf.read(f"images/{i}.png"))).convert('RGBA'))
            colours = {tuple(p) for p in pixels.reshape(-1, 4)}
            assert colours <= {(0, 0, 0, 255), (255, 255, 255, 255)}
            assert (0, 0, 0, 255) in colours

    assert public['name'] == "Foo Shadow #3"
    assert reveal['id'] == 3
    assert reveal['fullMetadata']['name'] == "Foo #3"
    assert reveal['shadowImageUsed'] == "images/3.png"
    assert set(reveal['traits']) == {'background', 'skin', 'eyes', 'hat'}


def test_degenerate_silhouette_is_reported_not_fatal(tmp_path, small_catalog, foo_config):
    result = render_collection(make_request(foo_config, 2, silhouette=True), small_catalog,
                               FakeLoader({}), tmp_path / 'c.zip')

    kinds = {issue.kind for issue in result.issues}
    assert 'DegenerateSilhouette' in kinds
    assert 'LayerLoadFailure' in kinds
    assert result.skipped_tokens == []
    assert result.entries_written == 6


def test_worker_pool_output_matches_sequential(tmp_path, collection_catalog, collection_loader, foo_config):
    sequential = render_collection(make_request(foo_config, 30, seed=8), collection_catalog,
                                   collection_loader, tmp_path / 'seq.zip')
    pooled = render_collection(make_request(foo_config, 30, seed=8, workers=3, batch_size=5),
                               collection_catalog, collection_loader, tmp_path / 'pool.zip')

    with zipfile.ZipFile(sequential.archive_path) as a, zipfile.ZipFile(pooled.archive_path) as b:
        assert a.namelist() == b.namelist()
        for name in a.namelist():
            assert a.read(name) == b.read(name)


def test_insufficient_space_fails_before_any_output(tmp_path, small_catalog, small_loader, foo_config):
    with pytest.raises(InsufficientCombinationSpace):
        render_collection(make_request(foo_config, 19), small_catalog, small_loader, tmp_path / 'c.zip')
    assert small_loader.calls == []
    assert list(tmp_path.iterdir()) == []


def test_archive_failure_is_fatal_and_discards(tmp_path, monkeypatch, collection_catalog, collection_loader,
                                               foo_config):
    real_add_token = CollectionArchive.add_token

    def failing_add_token(self, token_id, *args, **kwargs):
        if token_id == 5:
            raise ArchiveWriteFailure("disk full", token_id)
        return real_add_token(self, token_id, *args, **kwargs)

    monkeypatch.setattr(CollectionArchive, 'add_token', failing_add_token)

    with pytest.raises(ArchiveWriteFailure) as excinfo:
        render_collection(make_request(foo_config, 10), collection_catalog, collection_loader,
                          tmp_path / 'c.zip')
    assert excinfo.value.token_id == 5
    assert list(tmp_path.iterdir()) == []


def test_metadata_failure_skips_only_that_token(tmp_path, monkeypatch, collection_catalog, collection_loader,
                                                foo_config):
    real_build = batch_renderer.build_token_metadata

    def flaky_build(token_id, assignment, config):
        if token_id == 3:
            raise KeyError('name')
        return real_build(token_id, assignment, config)

    monkeypatch.setattr(batch_renderer, 'build_token_metadata', flaky_build)

    result = render_collection(make_request(foo_config, 6), collection_catalog, collection_loader,
                               tmp_path / 'c.zip')

    assert result.skipped_tokens == [3]
    assert result.rendered_count == 5
    assert [issue.kind for issue in result.issues] == ['TokenRenderFailure']
    entries = names(result.archive_path)
    assert 'images/3.png' not in entries and 'metadata/3' not in entries
    assert len(entries) == 10


def test_jpeg_collection(tmp_path, collection_catalog, collection_loader, foo_config):
    result = render_collection(make_request(foo_config, 3, image_format='jpeg', quality=80),
                               collection_catalog, collection_loader, tmp_path / 'c.zip')
    with zipfile.ZipFile(result.archive_path) as zf:
        assert 'images/1.jpg' in zf.namelist()
        assert json.loads(zf.read('metadata/1'))['image'] == "ipfs://CID/1.jpg"


def test_render_preview(small_catalog, small_loader):
    png, assignment = render_preview(small_catalog, small_loader, size=(16, 16), seed=3)
    image = Image.open(io.BytesIO(png))
    assert image.format == 'PNG'
    assert image.size == (16, 16)
    assert assignment['skin'] in ('Green', 'Purple')


@pytest.mark.parametrize('seconds,expected', [
    (0, "0s"), (42.2, "42s"), (59.6, "1m 0s"), (119.7, "2m 0s"), (125, "2m 5s"),
])
def test_format_time(seconds, expected):
    assert format_time(seconds) == expected


def test_run_releases_its_layer_resolver(tmp_path, monkeypatch, small_catalog, small_loader, foo_config):
    pools = []
    real_new_layer_resolver = batch_renderer.new_layer_resolver

    def recording_resolver(*args, **kwargs):
        pools.append(real_new_layer_resolver(*args, **kwargs))
        return pools[-1]

    monkeypatch.setattr(batch_renderer, 'new_layer_resolver', recording_resolver)

    result = render_collection(make_request(foo_config, 4, layer_timeout=5.0), small_catalog, small_loader,
                               tmp_path / 'c.zip')

    assert result.rendered_count == 4
    assert len(pools) == 1
    with pytest.raises(RuntimeError):
        pools[0].submit(print)
