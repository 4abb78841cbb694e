# watermarker/exporter.py
import errno
import io
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from watermarker.compositor import composite_image
from watermarker.errors import ExportWriteError, ImageDecodeError
from watermarker.image_io import decode_image_bytes
from watermarker.models import CropSettings, ExportSettings

logger = logging.getLogger(__name__)

# 导出格式 -> (PIL 格式名, 扩展名)
EXPORT_FORMATS = {
    'png': ('PNG', 'png'),
    'jpg': ('JPEG', 'jpg'),
    'webp': ('WEBP', 'webp'),
}
OUTPUT_SUFFIX = '_watermarked'


def clamp_quality(quality):
    return int(min(100, max(1, quality)))


def encode_image(surface, output_format='png', quality=85):
    """
    编码最终画布

    png 为无损格式，忽略 quality；jpg/webp 使用 1~100 的质量参数
    """
    if output_format not in EXPORT_FORMATS:
        raise ValueError(f"不支持的导出格式: {output_format}")
    pil_format, _ = EXPORT_FORMATS[output_format]
    buf = io.BytesIO()
    if output_format == 'jpg':
        rgb = surface.convert('RGB')
        rgb.save(buf, pil_format, quality=clamp_quality(quality), optimize=True)
    elif output_format == 'webp':
        surface.save(buf, pil_format, quality=clamp_quality(quality))
    else:
        surface.save(buf, pil_format, compress_level=6)
    return buf.getvalue()


def output_filename(file_name, output_format):
    _, ext = EXPORT_FORMATS[output_format]
    return f"{Path(file_name).stem}{OUTPUT_SUFFIX}.{ext}"


def is_permission_error(error):
    if isinstance(error, PermissionError):
        return True
    if isinstance(error, OSError) and error.errno in (errno.EACCES, errno.EPERM):
        return True
    return 'Permission denied' in str(error)


def write_output(data, file_name, folder, output_format):
    """
    写出 <原文件名>_watermarked.<ext>

    写入失败时抛出 ExportWriteError，权限类错误带 permission=True
    """
    dst_path = os.path.join(folder, output_filename(file_name, output_format))
    try:
        with open(dst_path, 'wb') as f:
            f.write(data)
    except OSError as e:
        raise ExportWriteError(str(e), permission=is_permission_error(e)) from e
    return dst_path


@dataclass
class ExportJob:
    """
    单张图片的导出任务

    任务携带所需输入的完整副本（源图字节与设置），
    在独立的执行上下文中运行，不与其他图片共享可变状态。
    """
    image_id: str
    file_name: str
    source_data: bytes
    crop: CropSettings
    watermark: object
    settings: ExportSettings


@dataclass
class ExportJobResult:
    image_id: str
    success: bool
    data: Optional[bytes] = None
    extension: Optional[str] = None
    error: Optional[str] = None


def build_export_job(image, settings):
    return ExportJob(
        image_id=image.id,
        file_name=image.file_name,
        source_data=image.original_data,
        crop=image.crop.clone(),
        watermark=image.watermark.clone(),
        settings=ExportSettings(settings.format, settings.quality, settings.scale, settings.output_folder),
    )


def process_image_job(job):
    """在独立上下文中执行：解码、合成、编码。错误以字符串返回，不向外抛出"""
    try:
        source = decode_image_bytes(job.source_data)
        surface = composite_image(source, job.crop, job.watermark, job.settings.scale)
        data = encode_image(surface, job.settings.format, job.settings.quality)
    except ImageDecodeError as e:
        return ExportJobResult(job.image_id, False, error=str(e))
    except (OSError, ValueError) as e:
        return ExportJobResult(job.image_id, False, error=f"合成失败: {e}")
    return ExportJobResult(job.image_id, True, data=data, extension=EXPORT_FORMATS[job.settings.format][1])
