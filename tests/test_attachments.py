from __future__ import annotations

import base64
from pathlib import Path
from unittest.mock import patch

from visual_agent.shared.services import attachments
from visual_agent.shared.services.attachments import image_to_data_url, path_exists

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def test_path_exists(tmp_path: Path) -> None:
    target = tmp_path / "file.txt"
    assert not path_exists(target)
    target.write_text("x")
    assert path_exists(target)
    assert path_exists(str(tmp_path))


def test_image_becomes_data_url(tmp_path: Path) -> None:
    image = tmp_path / "shot.png"
    image.write_bytes(PNG_BYTES)
    url = image_to_data_url(image)
    assert url == "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode()


def test_non_image_is_refused(tmp_path: Path) -> None:
    text = tmp_path / "notes.txt"
    text.write_text("hello")
    assert image_to_data_url(text) is None


def test_missing_image_is_none(tmp_path: Path) -> None:
    assert image_to_data_url(tmp_path / "gone.png") is None


def test_oversized_image_is_refused(tmp_path: Path) -> None:
    image = tmp_path / "big.png"
    image.write_bytes(PNG_BYTES * 4)
    with patch.object(attachments, "MAX_INLINE_BYTES", 10):
        assert image_to_data_url(image) is None
