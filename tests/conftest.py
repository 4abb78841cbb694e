import io

import pytest
from PIL import Image

from watermarker.collection import ImageCollection
from watermarker.models import ImageWatermarkConfig

RED = (200, 30, 30, 255)
BLUE = (0, 0, 255, 255)


def encode_png(width, height, color=RED):
    buf = io.BytesIO()
    Image.new("RGBA", (width, height), color).save(buf, "PNG")
    return buf.getvalue()


@pytest.fixture
def make_png():
    return encode_png


@pytest.fixture
def logo_config():
    """100x50 纯蓝水印，完全不透明"""
    return ImageWatermarkConfig(encode_png(100, 50, BLUE), 100, 50, opacity=100)


@pytest.fixture
def collection():
    images = ImageCollection()
    for i, (w, h) in enumerate([(400, 200), (300, 300), (200, 400)]):
        images.add_image(f"/photos/img{i}.png", encode_png(w, h), w, h)
    return images
