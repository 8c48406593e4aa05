"""
Unit and integration tests for the `core` module of the Google Street View
Panorama Stitcher.

This test suite covers:

- `fetch_tile`: successful fetches, retries with linear backoff, non-200
  responses and network failures.
- `fetch_tiles`: progress reporting, blank and missing tiles, the size of
  the worker pool and cancellation.
- `stitch_image` / `stitch`: end-to-end scenarios with mocked tiles,
  unsupported zoom levels and rendering failures.
- `process_panoid` / `fetch_panos`: saving panoramas and handling partial or
  complete failures.

Utilities:
- `dummy_image` and `dummy_image_bytes` provide in-memory images for testing.

The tests use:
- `pytest` with `pytest.mark.asyncio` for async test support.
- `unittest.mock` and `monkeypatch` for patching async HTTP calls and
  internal functions.
- `tmp_path` fixtures to test file writing without polluting the filesystem.

Usage:
    pytest gsvstitch/tests/test_core.py
"""
import pytest
import asyncio
from PIL import Image
from io import BytesIO
from unittest.mock import MagicMock
from ..catalog import get_grid, TileCoordinate
from ..exceptions import InvalidZoom, RenderingUnavailable, StitchCancelled, TileUnavailable
from .. import core


def dummy_image_bytes(size=(256, 256), color=(255, 0, 0)):
    """
    Generate dummy image bytes for testing.

    Args:
        size (tuple[int, int]): Width and height of the image.
        color (tuple[int, int, int]): RGB color of the image.

    Returns:
        bytes: Image data in JPEG format.
    """
    buf = BytesIO()
    Image.new('RGB', size, color).save(buf, format='JPEG')
    buf.seek(0)
    return buf.read()


def dummy_image(size=(512, 512), color=(255, 0, 0)):
    """
    Generate a PIL Image object for testing.

    Args:
        size (tuple[int, int]): Width and height of the image.
        color (tuple[int, int, int]): RGB color of the image.

    Returns:
        PIL.Image.Image: Dummy image object.
    """
    return Image.new('RGB', size, color)


def make_response(status=200, body=b""):
    class MockResponse:
        async def read(self):
            return body

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            pass

    response = MockResponse()
    response.status = status
    return response


def test_build_tile_url():
    url = core.build_tile_url("abc_DEF-123", 5, 2, 4)
    assert url == (
        "https://streetviewpixels-pa.googleapis.com/v1/tile?cb_client=maps_sv.tactile"
        "&panoid=abc_DEF-123&x=5&y=2&zoom=4&nbt=1&fover=2"
    )


@pytest.mark.asyncio
async def test_fetch_tile_success_mocked(monkeypatch):
    """
    Test fetch_tile with a successful mocked HTTP response.

    Ensures that fetch_tile requests the tile URL and returns an RGB image.
    """
    requested = []

    def mock_get(url, *args, **kwargs):
        requested.append(url)
        return make_response(200, dummy_image_bytes())

    async with core.aiohttp.ClientSession() as session:
        monkeypatch.setattr(session, "get", mock_get)
        img = await core.fetch_tile(session, "fake_panoid", 1, 2, 3)

    assert isinstance(img, Image.Image)
    assert img.mode == "RGB"
    assert img.size == (256, 256)
    assert requested == [core.build_tile_url("fake_panoid", 1, 2, 3)]


@pytest.mark.asyncio
async def test_fetch_tile_failure():
    """
    Test fetch_tile behavior when network requests fail.

    Ensures the function raises TileUnavailable after using every attempt.
    """
    session = MagicMock()
    mock_response = MagicMock()
    mock_response.__aenter__.side_effect = Exception("Network error")
    session.get.return_value = mock_response

    with pytest.raises(TileUnavailable) as excinfo:
        await core.fetch_tile(session, "fake_panoid", 0, 0, 3, retries=2, backoff=0)

    assert session.get.call_count == 2
    assert "Network error" in str(excinfo.value)


@pytest.mark.asyncio
async def test_fetch_tile_non_200_is_retried():
    session = MagicMock()
    session.get.side_effect = lambda *args, **kwargs: make_response(404)

    with pytest.raises(TileUnavailable):
        await core.fetch_tile(session, "fake_panoid", 0, 0, 3, retries=3, backoff=0)

    assert session.get.call_count == 3


@pytest.mark.asyncio
async def test_fetch_tile_recovers_after_retry():
    responses = iter([make_response(500), make_response(200, dummy_image_bytes())])
    session = MagicMock()
    session.get.side_effect = lambda *args, **kwargs: next(responses)

    img = await core.fetch_tile(session, "fake_panoid", 0, 0, 3, retries=2, backoff=0)

    assert isinstance(img, Image.Image)
    assert session.get.call_count == 2


@pytest.mark.asyncio
async def test_fetch_tile_undecodable_body():
    session = MagicMock()
    session.get.side_effect = lambda *args, **kwargs: make_response(200, b"not an image")

    with pytest.raises(TileUnavailable):
        await core.fetch_tile(session, "fake_panoid", 0, 0, 3, retries=1, backoff=0)


@pytest.mark.asyncio
async def test_fetch_tile_linear_backoff(monkeypatch):
    """
    Attempt n is followed by a pause of n * backoff seconds.
    """
    waits = []

    async def fake_sleep(delay):
        waits.append(delay)

    monkeypatch.setattr(core.asyncio, "sleep", fake_sleep)

    session = MagicMock()
    session.get.side_effect = lambda *args, **kwargs: make_response(503)

    with pytest.raises(TileUnavailable):
        await core.fetch_tile(session, "fake_panoid", 0, 0, 3, retries=3, backoff=0.2)

    assert waits == pytest.approx([0.2, 0.4])


@pytest.mark.asyncio
async def test_fetch_tiles_progress(monkeypatch):
    """
    Progress starts at zero, grows by one per settled tile and ends at the total,
    whether tiles succeed, are blank or fail.
    """
    async def fake_fetch_tile(session, panoid, x, y, zoom_level, **kwargs):
        if y == 0:
            raise TileUnavailable("gone")
        if y == 3:
            return dummy_image(color=(0, 0, 0))
        return dummy_image(color=(90, 120, 150))

    monkeypatch.setattr(core, "fetch_tile", fake_fetch_tile)

    updates = []
    grid = get_grid(3)
    tiles = await core.fetch_tiles(None, "fake_panoid", grid, on_progress=updates.append)

    assert updates[0] == core.Progress(0, 32)
    assert updates[-1] == core.Progress(32, 32)
    assert len(updates) == 33
    loaded = [update.loaded for update in updates]
    assert loaded == sorted(loaded)
    assert all(update.loaded <= update.total for update in updates)

    assert len(tiles) == 32
    assert all(tiles[TileCoordinate(col, 0)] is None for col in range(8))
    assert all(tiles[TileCoordinate(col, 3)] is None for col in range(8))
    assert all(tiles[TileCoordinate(col, 1)] is not None for col in range(8))


@pytest.mark.asyncio
async def test_fetch_tiles_worker_pool_is_bounded(monkeypatch):
    active = 0
    peak = 0
    seen = []

    async def fake_fetch_tile(session, panoid, x, y, zoom_level, **kwargs):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        seen.append((x, y))
        await asyncio.sleep(0.001)
        active -= 1
        return dummy_image(color=(200, 200, 200))

    monkeypatch.setattr(core, "fetch_tile", fake_fetch_tile)

    await core.fetch_tiles(None, "fake_panoid", get_grid(3), workers=3)

    assert peak == 3
    assert len(seen) == 32
    assert len(set(seen)) == 32


@pytest.mark.asyncio
async def test_fetch_tiles_cancel(monkeypatch):
    calls = []
    cancel = asyncio.Event()

    async def fake_fetch_tile(session, panoid, x, y, zoom_level, **kwargs):
        calls.append((x, y))
        return dummy_image(color=(200, 200, 200))

    def on_progress(progress):
        if progress.loaded == 3:
            cancel.set()

    monkeypatch.setattr(core, "fetch_tile", fake_fetch_tile)

    with pytest.raises(StitchCancelled):
        await core.fetch_tiles(None, "fake_panoid", get_grid(3), on_progress=on_progress,
                               workers=1, cancel=cancel)

    assert calls == [(0, 0), (1, 0), (2, 0)]


@pytest.mark.asyncio
async def test_fetch_tiles_error_stops_remaining_workers(monkeypatch):
    """
    An error in one worker fails the job and no tile is fetched afterwards.
    """
    calls = []

    async def fake_fetch_tile(session, panoid, x, y, zoom_level, **kwargs):
        calls.append((x, y))
        await asyncio.sleep(0.001)
        return dummy_image(color=(200, 200, 200))

    def on_progress(progress):
        if progress.loaded == 2:
            raise RuntimeError("progress display crashed")

    monkeypatch.setattr(core, "fetch_tile", fake_fetch_tile)

    with pytest.raises(RuntimeError):
        await core.fetch_tiles(None, "fake_panoid", get_grid(3), on_progress=on_progress, workers=4)

    fetched = len(calls)
    await asyncio.sleep(0.05)

    assert len(calls) == fetched
    assert fetched < 32


@pytest.mark.parametrize("options", [{"workers": 0}, {"workers": -2}, {"retries": 0}])
@pytest.mark.asyncio
async def test_fetch_tiles_rejects_empty_pool_or_retries(monkeypatch, options):
    calls = []

    async def fake_fetch_tile(*args, **kwargs):
        calls.append(args)
        return dummy_image()

    monkeypatch.setattr(core, "fetch_tile", fake_fetch_tile)

    updates = []
    with pytest.raises(ValueError):
        await core.fetch_tiles(None, "fake_panoid", get_grid(3), on_progress=updates.append, **options)

    assert calls == []
    assert updates == []


@pytest.mark.asyncio
async def test_fetch_tile_rejects_zero_retries():
    session = MagicMock()

    with pytest.raises(ValueError):
        await core.fetch_tile(session, "fake_panoid", 0, 0, 3, retries=0)

    assert session.get.call_count == 0


@pytest.mark.asyncio
async def test_stitch_closes_tiles(monkeypatch):
    closed = []

    async def fake_fetch_tile(session, panoid, x, y, zoom_level, **kwargs):
        tile = dummy_image(color=(128, 128, 128))
        tile.close = lambda: closed.append((x, y))
        return tile

    monkeypatch.setattr(core, "fetch_tile", fake_fetch_tile)

    full_img = await core.stitch_image("fake_panoid", 3)

    assert full_img.size == (4096, 2048)
    assert sorted(closed) == sorted((x, y) for x in range(8) for y in range(4))


@pytest.mark.asyncio
async def test_stitch_uniform_tiles(monkeypatch):
    """
    Identical gray tiles fill the whole 8x4 grid: nothing is cropped and the
    uniform content is not mistaken for a wrap seam.
    """
    async def fake_fetch_tile(session, panoid, x, y, zoom_level, **kwargs):
        return dummy_image(color=(128, 128, 128))

    monkeypatch.setattr(core, "fetch_tile", fake_fetch_tile)

    updates = []
    full_img = await core.stitch_image("fake_panoid", 3, updates.append)

    assert full_img.size == (4096, 2048)
    assert updates[-1] == core.Progress(32, 32)


@pytest.mark.asyncio
async def test_stitch_trims_missing_top_row(monkeypatch):
    async def fake_fetch_tile(session, panoid, x, y, zoom_level, **kwargs):
        if y == 0:
            raise TileUnavailable("outside the capture")
        return dummy_image(color=(200, 60, 40))

    monkeypatch.setattr(core, "fetch_tile", fake_fetch_tile)

    full_img = await core.stitch_image("fake_panoid", 3)

    assert full_img.size == (4096, 1536)
    assert full_img.getpixel((0, 0)) == (200, 60, 40)


@pytest.mark.asyncio
async def test_stitch_invalid_zoom_issues_no_requests(monkeypatch):
    calls = []

    async def fake_fetch_tile(*args, **kwargs):
        calls.append(args)
        return dummy_image()

    monkeypatch.setattr(core, "fetch_tile", fake_fetch_tile)

    with pytest.raises(InvalidZoom):
        await core.stitch_image("fake_panoid", 99)
    with pytest.raises(InvalidZoom):
        await core.stitch("fake_panoid", 99)

    assert calls == []


@pytest.mark.asyncio
async def test_stitch_returns_jpeg(monkeypatch):
    async def fake_fetch_tile(session, panoid, x, y, zoom_level, **kwargs):
        return dummy_image(color=(128, 128, 128))

    monkeypatch.setattr(core, "fetch_tile", fake_fetch_tile)

    data = await core.stitch("fake_panoid", 3)

    assert data[:2] == b"\xff\xd8"
    with Image.open(BytesIO(data)) as img:
        assert img.format == "JPEG"
        assert img.size == (4096, 2048)


@pytest.mark.asyncio
async def test_stitch_rendering_unavailable(monkeypatch):
    async def fake_fetch_tile(session, panoid, x, y, zoom_level, **kwargs):
        return dummy_image(color=(128, 128, 128))

    def broken_render(grid, tiles):
        raise RenderingUnavailable("no canvas")

    monkeypatch.setattr(core, "fetch_tile", fake_fetch_tile)
    monkeypatch.setattr(core, "render_panorama", broken_render)

    with pytest.raises(RenderingUnavailable):
        await core.stitch_image("fake_panoid", 3)


@pytest.mark.asyncio
async def test_stitch_jobs_run_concurrently(monkeypatch):
    async def fake_fetch_tile(session, panoid, x, y, zoom_level, **kwargs):
        await asyncio.sleep(0)
        if panoid == "short" and y == 0:
            raise TileUnavailable("gone")
        return dummy_image(color=(100, 150, 200))

    monkeypatch.setattr(core, "fetch_tile", fake_fetch_tile)

    full, short = await asyncio.gather(
        core.stitch_image("full", 3),
        core.stitch_image("short", 3),
    )

    assert full.size == (4096, 2048)
    assert short.size == (4096, 1536)


@pytest.mark.asyncio
async def test_process_panoid_success(monkeypatch, tmp_path):
    """
    Test process_panoid with mocked tiles to simulate a successful panorama download.

    Checks that the returned metadata is correct and the image file exists.
    """
    async def fake_fetch_tile(session, panoid, x, y, zoom_level, **kwargs):
        return dummy_image((512, 512), (255, 0, 0))

    monkeypatch.setattr(core, "fetch_tile", fake_fetch_tile)

    sem_pano = asyncio.Semaphore(1)
    session = None
    executor = None
    zoom_level = 3
    panoid = "fake_panoid"

    result = await core.process_panoid(session=session,
                                       panoid=panoid,
                                       sem_pano=sem_pano,
                                       executor=executor,
                                       zoom_level=zoom_level,
                                       output_dir=tmp_path
                                       )
    assert result is not None
    assert result["panoid"] == panoid
    assert result["zoom"] == zoom_level
    assert result["size"] == (4096, 2048)
    assert result["tiles"] == (32, 32)

    expected_file = tmp_path / f"panos_z{zoom_level}" / f"{panoid}_4096x2048.jpg"
    assert expected_file.exists()


@pytest.mark.asyncio
async def test_process_panoid_no_tiles(monkeypatch, tmp_path):
    """
    Test process_panoid behavior when no tiles are returned.

    Ensures the function returns None and saves nothing.
    """
    async def fake_fetch_tile(session, panoid, x, y, zoom_level, **kwargs):
        raise TileUnavailable("expired")

    monkeypatch.setattr(core, "fetch_tile", fake_fetch_tile)

    sem_pano = asyncio.Semaphore(1)
    result = await core.process_panoid(None, "expired_panoid", sem_pano, None, 3, tmp_path)

    assert result is None
    assert not (tmp_path / "panos_z3").exists()


@pytest.mark.asyncio
async def test_fetch_panos_with_failures(tmp_path, monkeypatch):
    """
    Test fetch_panos with some panoramas failing.

    Ensures only successful panoramas are counted and saved.
    """
    async def fake_fetch_tile(session, panoid, x, y, zoom_level, **kwargs):
        if panoid == "panoid2":
            raise TileUnavailable("expired")
        return dummy_image((512, 512), (90, 160, 30))

    monkeypatch.setattr(core, "fetch_tile", fake_fetch_tile)
    panoids = ["panoid1", "panoid2", "panoid3"]

    sem_pano = asyncio.Semaphore(10)
    connector = core.aiohttp.TCPConnector(limit=10, limit_per_host=10)

    total_panos, successful_panos, output_dir = await core.fetch_panos(
        sem_pano,
        connector,
        max_workers=2,
        zoom_level=3,
        panoids=panoids,
        output_dir=str(tmp_path)
    )

    assert total_panos == 3
    assert successful_panos == 2
    assert output_dir == str(tmp_path)

    assert (tmp_path / "panos_z3" / "panoid1_4096x2048.jpg").exists()
    assert (tmp_path / "panos_z3" / "panoid3_4096x2048.jpg").exists()
    assert not list((tmp_path / "panos_z3").glob("panoid2_*.jpg"))


@pytest.mark.asyncio
async def test_fetch_panos_empty_dataset(tmp_path):
    """
    Test fetch_panos when given an empty list of panoids.

    Should return zero total and successful panoramas.
    """
    sem_pano = asyncio.Semaphore(10)
    connector = core.aiohttp.TCPConnector(limit=10, limit_per_host=10)

    total_panos, successful_panos, output_dir = await core.fetch_panos(
        sem_pano,
        connector,
        max_workers=2,
        zoom_level=3,
        panoids=[],
        output_dir=str(tmp_path)
    )

    assert total_panos == 0
    assert successful_panos == 0
    assert output_dir == str(tmp_path)


@pytest.mark.asyncio
async def test_fetch_panos_invalid_zoom(tmp_path, monkeypatch):
    calls = []

    async def fake_fetch_tile(*args, **kwargs):
        calls.append(args)
        return dummy_image()

    monkeypatch.setattr(core, "fetch_tile", fake_fetch_tile)

    with pytest.raises(InvalidZoom):
        await core.fetch_panos(asyncio.Semaphore(1), None, 1, 99, ["panoid1"], str(tmp_path))

    assert calls == []
