import io
import os

import pytest
from PIL import Image

from images import IMAGE_SIZES, ImageProcessingError, process_and_save_image, image_urls


def _image_bytes(mode='RGB', size=(1000, 500), fmt='PNG'):
    buffer = io.BytesIO()
    Image.new(mode, size).save(buffer, fmt)
    return buffer.getvalue()


def test_saves_every_size(tmp_path):
    filename = process_and_save_image(_image_bytes(), str(tmp_path))

    assert filename.endswith('.jpg')
    for size_name, (width, height) in IMAGE_SIZES.items():
        path = tmp_path / size_name / filename
        assert path.exists()
        with Image.open(path) as image:
            assert image.format == 'JPEG'
            assert image.width <= width and image.height <= height


def test_keeps_aspect_ratio(tmp_path):
    filename = process_and_save_image(_image_bytes(size=(1000, 500)), str(tmp_path))

    with Image.open(tmp_path / 'card' / filename) as image:
        assert image.size == (400, 200)


def test_converts_palette_and_alpha(tmp_path):
    for mode in ('RGBA', 'P', 'LA'):
        filename = process_and_save_image(_image_bytes(mode=mode, size=(50, 50)), str(tmp_path))
        assert os.path.exists(tmp_path / 'thumb' / filename)


def test_rejects_garbage(tmp_path):
    with pytest.raises(ImageProcessingError):
        process_and_save_image(b'\x00\x01garbage', str(tmp_path))


def test_image_urls():
    assert image_urls('abc.jpg') == {
        'full': '/media/products/full/abc.jpg',
        'card': '/media/products/card/abc.jpg',
        'thumb': '/media/products/thumb/abc.jpg'
    }


def test_rejects_oversized_image(tmp_path, monkeypatch):
    monkeypatch.setattr(Image, 'MAX_IMAGE_PIXELS', 1000)

    with pytest.raises(ImageProcessingError):
        process_and_save_image(_image_bytes(size=(100, 100)), str(tmp_path))
    assert not (tmp_path / 'card').exists()
