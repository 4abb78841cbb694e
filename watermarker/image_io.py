# watermarker/image_io.py
import io
import os

from PIL import Image, ImageOps, UnidentifiedImageError

from watermarker.errors import ImageDecodeError
from watermarker.models import ImageWatermarkConfig

SUPPORTED_EXTS = {'.jpg', '.jpeg', '.png', '.bmp', '.tif', '.tiff', '.webp'}


def is_image_file(path):
    _, ext = os.path.splitext(str(path).lower())
    return ext in SUPPORTED_EXTS


def decode_image_bytes(data):
    """解码图片字节并修正 EXIF 方向，失败时抛出 ImageDecodeError"""
    try:
        img = Image.open(io.BytesIO(data))
        img = ImageOps.exif_transpose(img)  # 修正 EXIF 方向
        img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise ImageDecodeError(f"无法解码图片: {e}") from e
    return img


def read_image_file(path):
    """
    读取图片文件

    返回:
        (data, width, height): 原始字节与修正方向后的像素尺寸
    """
    with open(path, 'rb') as f:
        data = f.read()
    img = decode_image_bytes(data)
    return data, img.width, img.height


def load_watermark_config(path, opacity=80):
    data, width, height = read_image_file(path)
    return ImageWatermarkConfig(data, width, height, opacity)


def generate_thumbnail(data, max_size=1024):
    img = decode_image_bytes(data)
    img.thumbnail((max_size, max_size), Image.LANCZOS)
    return img  # PIL.Image instance
