# watermarker/geometry.py
"""
几何计算内核

预览与导出共用同一组纯函数，保证所见即所得：
裁剪区域、输出尺寸、水印锚点位置以及图层尺寸。
"""
import math
from typing import NamedTuple


class Rect(NamedTuple):
    x: float
    y: float
    width: float
    height: float

    @property
    def center(self):
        return (self.x + self.width / 2, self.y + self.height / 2)


class Size(NamedTuple):
    width: int
    height: int


class Point(NamedTuple):
    x: float
    y: float


# 固定像素预设给出 width/height，比例预设给出 ratio
CROP_PRESETS = {
    'original': {},
    'freeform': {},
    'facebook-thumb': {'width': 1200, 'height': 630},
    'facebook-post': {'width': 1200, 'height': 1200},
    'youtube-thumb': {'width': 1280, 'height': 720},
    'tiktok-thumb': {'width': 1080, 'height': 1920},
    '1:1': {'ratio': 1},
    '4:5': {'ratio': 4 / 5},
    '16:9': {'ratio': 16 / 9},
    '9:16': {'ratio': 9 / 16},
}

ANCHORS = ('top-left', 'top-right', 'bottom-left', 'bottom-right', 'center', 'custom')

EDGE_PADDING = 20
MAX_CROP_DIMENSION = 4096
MAX_OUTPUT_DIMENSION = 8192
MIN_EXPORT_SCALE = 25
MAX_EXPORT_SCALE = 200
TEXT_SIZE_FACTOR = 0.1
DEFAULT_CROP_PERCENT = (0, 0, 100, 100)


def round_half_up(value):
    """四舍五入（.5 向上），Python 内置 round 是银行家舍入"""
    return int(math.floor(value + 0.5))


def preset_aspect_ratio(preset):
    """返回预设的目标宽高比，original/freeform 返回 None"""
    info = CROP_PRESETS.get(preset, {})
    if info.get('width') and info.get('height'):
        return info['width'] / info['height']
    return info.get('ratio')


def preset_fixed_size(preset):
    info = CROP_PRESETS.get(preset, {})
    if info.get('width') and info.get('height'):
        return Size(info['width'], info['height'])
    return None


def crop_is_modified(crop):
    """用户是否调整过裁剪框：显式标记优先，否则与默认百分比比较"""
    if getattr(crop, 'user_modified', False):
        return True
    return (crop.x, crop.y, crop.width, crop.height) != DEFAULT_CROP_PERCENT


def derive_crop_area(img_w, img_h, crop):
    """
    计算源图像素空间中的裁剪矩形

    参数:
        img_w, img_h: 源图尺寸
        crop: CropSettings (preset, x, y, width, height 为百分比)

    返回:
        Rect: 源图坐标系下的裁剪区域
    """
    if crop.preset == 'original':
        return Rect(0, 0, img_w, img_h)

    if crop.preset == 'freeform' or crop_is_modified(crop):
        return Rect(
            crop.x / 100 * img_w,
            crop.y / 100 * img_h,
            crop.width / 100 * img_w,
            crop.height / 100 * img_h,
        )

    target_ratio = preset_aspect_ratio(crop.preset)
    if not target_ratio:
        return Rect(0, 0, img_w, img_h)

    img_ratio = img_w / img_h
    if img_ratio > target_ratio:
        # 图片比目标更宽：保留全高，裁掉两侧
        crop_h = img_h
        crop_w = img_h * target_ratio
    else:
        crop_w = img_w
        crop_h = img_w / target_ratio

    return Rect((img_w - crop_w) / 2, (img_h - crop_h) / 2, crop_w, crop_h)


def clamp_export_scale(export_scale):
    return min(MAX_EXPORT_SCALE, max(MIN_EXPORT_SCALE, export_scale))


def derive_output_dimensions(crop_w, crop_h, crop, export_scale):
    """
    计算最终输出尺寸

    固定像素预设直接使用预设尺寸（假定裁剪框已按相同比例生成），
    否则使用裁剪尺寸并限制在 4096 以内。之后应用导出缩放 (25~200%)，
    最后整体限制在 8192 以内。
    """
    fixed = preset_fixed_size(crop.preset)
    if fixed:
        width, height = fixed
    else:
        scale = min(1, MAX_CROP_DIMENSION / max(crop_w, crop_h))
        width = round_half_up(crop_w * scale)
        height = round_half_up(crop_h * scale)

    factor = clamp_export_scale(export_scale) / 100
    width = max(1, round_half_up(width * factor))
    height = max(1, round_half_up(height * factor))

    final_scale = min(1, MAX_OUTPUT_DIMENSION / max(width, height))
    return Size(
        max(1, round_half_up(width * final_scale)),
        max(1, round_half_up(height * final_scale)),
    )


def derive_anchor_position(canvas_w, canvas_h, box_w, box_h, anchor, custom_x=0, custom_y=0):
    """
    计算水印左上角在画布中的位置

    custom 锚点按画布宽高的百分比定位，不做边界裁剪；
    未识别的锚点按左上角处理。
    """
    pad = EDGE_PADDING
    if anchor == 'top-left':
        return Point(pad, pad)
    if anchor == 'top-right':
        return Point(canvas_w - box_w - pad, pad)
    if anchor == 'bottom-left':
        return Point(pad, canvas_h - box_h - pad)
    if anchor == 'bottom-right':
        return Point(canvas_w - box_w - pad, canvas_h - box_h - pad)
    if anchor == 'center':
        return Point((canvas_w - box_w) / 2, (canvas_h - box_h) / 2)
    if anchor == 'custom':
        return Point(custom_x / 100 * canvas_w, custom_y / 100 * canvas_h)
    return Point(pad, pad)


def image_box_size(scale, canvas_w, source_w, source_h):
    """图片水印宽度为画布宽度的 scale%，高度按原图比例"""
    width = canvas_w * scale / 100
    return width, width * source_h / source_w


def text_font_size(scale, canvas_w):
    return round_half_up(scale / 100 * canvas_w * TEXT_SIZE_FACTOR)


def derive_layer_rect(canvas_w, canvas_h, box_w, box_h, anchor, custom_x=0, custom_y=0):
    x, y = derive_anchor_position(canvas_w, canvas_h, box_w, box_h, anchor, custom_x, custom_y)
    return Rect(x, y, box_w, box_h)


def centered_crop_percent(img_ratio, target_ratio):
    """把居中的比例裁剪表示为百分比，用于开始拖动裁剪框前初始化"""
    if img_ratio > target_ratio:
        height = 100
        width = target_ratio / img_ratio * 100
    else:
        width = 100
        height = img_ratio / target_ratio * 100
    return Rect((100 - width) / 2, (100 - height) / 2, width, height)


def fit_size(src_w, src_h, max_w, max_h):
    """等比缩放以适应 max_w x max_h"""
    aspect = src_w / src_h
    width = max_w
    height = max_w / aspect
    if height > max_h:
        height = max_h
        width = max_h * aspect
    return width, height
