import asyncio
from pathlib import Path

import pytest

from vodclip.delivery import create_scratch_file, iter_file_chunks, remove_scratch, select_delivery_mode
from vodclip.errors import ValidationError
from vodclip.models import DeliveryMode

IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 Mobile/15E148"
DESKTOP_UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/124.0 Safari/537.36"


@pytest.mark.parametrize(
    "ua, expected",
    [
        (IPHONE_UA, DeliveryMode.BUFFER),
        ("Mozilla/5.0 (iPad; CPU OS 16_0 like Mac OS X)", DeliveryMode.BUFFER),
        (DESKTOP_UA, DeliveryMode.STREAM),
        ("", DeliveryMode.STREAM),
        (None, DeliveryMode.STREAM),
    ],
)
def test_mode_from_user_agent(ua, expected):
    assert select_delivery_mode(ua) == expected


def test_explicit_mode_wins():
    assert select_delivery_mode(IPHONE_UA, "stream") == DeliveryMode.STREAM
    assert select_delivery_mode(DESKTOP_UA, "BUFFER") == DeliveryMode.BUFFER


def test_force_buffered_overrides_user_agent():
    assert select_delivery_mode(DESKTOP_UA, force_buffered=True) == DeliveryMode.BUFFER
    assert select_delivery_mode(DESKTOP_UA, "stream", force_buffered=True) == DeliveryMode.STREAM


def test_unknown_mode_rejected():
    with pytest.raises(ValidationError):
        select_delivery_mode(DESKTOP_UA, "carrier-pigeon")


def test_scratch_files_are_unique_and_removable(tmp_path: Path):
    scratch = tmp_path / "scratch"
    a = create_scratch_file(scratch)
    b = create_scratch_file(scratch)

    assert a != b
    assert a.parent == scratch and a.suffix == ".mp4"
    assert a.exists() and a.stat().st_size == 0

    remove_scratch(a)
    remove_scratch(a)
    remove_scratch(None)
    assert not a.exists()
    assert list(scratch.iterdir()) == [b]


def test_iter_file_chunks(tmp_path: Path):
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"0123456789" * 10)

    async def collect():
        return [chunk async for chunk in iter_file_chunks(path, chunk_size=32)]

    chunks = asyncio.run(collect())
    assert [len(c) for c in chunks] == [32, 32, 32, 4]
    assert b"".join(chunks) == path.read_bytes()
