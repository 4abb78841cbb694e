# watermarker/compositor.py
"""
合成管线

导出与预览共用 paint_watermarks：几何由 geometry 模块计算，
这里只负责把裁剪后的源图和各图层绘制到画布上。
"""
from PIL import Image

from watermarker.geometry import (
    derive_crop_area, derive_layer_rect, derive_output_dimensions,
    image_box_size, text_font_size,
)
from watermarker.image_io import decode_image_bytes
from watermarker.models import LayerStack, LegacyWatermark, WatermarkLayer
from watermarker.watermark import create_text_watermark_image, measure_text


def decode_watermark(config):
    """把图片水印配置解码为 RGBA"""
    return decode_image_bytes(config.image_data).convert('RGBA')


def legacy_as_layer(legacy):
    """旧版水印按一个不旋转、始终可见的图层处理"""
    return WatermarkLayer(
        id='legacy',
        name='legacy',
        type=legacy.type,
        anchor=legacy.anchor,
        custom_x=legacy.custom_x,
        custom_y=legacy.custom_y,
        scale=legacy.scale,
        rotation=0,
        image_config=legacy.image_config if legacy.type == 'image' else None,
        text_config=legacy.text_config if legacy.type == 'text' else None,
    )


def watermark_layers(watermark):
    """按绘制顺序（自底向上）返回需要绘制的图层"""
    if isinstance(watermark, LayerStack):
        return [layer for layer in watermark.layers if layer.visible]
    if isinstance(watermark, LegacyWatermark):
        return [legacy_as_layer(watermark)]
    return []


def layer_rect(layer, canvas_w, canvas_h):
    """
    计算图层在画布中的矩形

    返回:
        (Rect, font_size)；图层没有可绘制内容时返回 (None, 0)
    """
    if layer.type == 'image':
        config = layer.image_config
        if config is None or not config.image_data:
            return None, 0
        box_w, box_h = image_box_size(layer.scale, canvas_w, config.original_width, config.original_height)
        font_size = 0
    else:
        config = layer.text_config
        if config is None or not config.text:
            return None, 0
        font_size = text_font_size(layer.scale, canvas_w)
        if font_size <= 0:
            return None, 0
        box_w, box_h = measure_text(config, font_size)
    rect = derive_layer_rect(canvas_w, canvas_h, box_w, box_h, layer.anchor, layer.custom_x, layer.custom_y)
    return rect, font_size


def layer_placements(watermark, canvas_w, canvas_h):
    placements = []
    for layer in watermark_layers(watermark):
        rect, font_size = layer_rect(layer, canvas_w, canvas_h)
        if rect is not None:
            placements.append((layer, rect, font_size))
    return placements


def apply_opacity(tile, opacity):
    """0~100 的不透明度乘到 alpha 通道上"""
    factor = max(0.0, min(100.0, opacity)) / 100
    if factor >= 1:
        return tile
    alpha = tile.getchannel('A').point(lambda a: int(a * factor + 0.5))
    tile = tile.copy()
    tile.putalpha(alpha)
    return tile


def render_layer_tile(layer, rect, font_size, load_bitmap):
    size = (max(1, int(round(rect.width))), max(1, int(round(rect.height))))
    if layer.type == 'image':
        tile = load_bitmap(layer.image_config)
        if tile.mode != 'RGBA':
            tile = tile.convert('RGBA')
        tile = tile.resize(size, Image.LANCZOS)
    else:
        tile = create_text_watermark_image(layer.text_config, font_size, (rect.width, rect.height))
    return apply_opacity(tile, layer.opacity)


def tile_position(rect, tile, rotation):
    """
    返回贴图左上角位置

    有旋转时贴图已按 expand=True 旋转，保持旋转中心为矩形中心。
    """
    if not rotation:
        return int(round(rect.x)), int(round(rect.y)), tile
    # Canvas 坐标系 y 轴向下，顺时针为正；PIL rotate 为逆时针
    rotated = tile.rotate(-rotation, expand=True, resample=Image.BICUBIC)
    cx, cy = rect.center
    return int(round(cx - rotated.width / 2)), int(round(cy - rotated.height / 2)), rotated


def paint_watermarks(surface, watermark, canvas_box=None, load_bitmap=decode_watermark):
    """
    把水印图层绘制到 surface 上

    参数:
        surface: RGBA 画布，原地修改
        watermark: LayerStack 或 LegacyWatermark
        canvas_box: (x, y, w, h) 水印画布在 surface 中的区域，超出部分被裁掉；
                    默认整张 surface（导出）
        load_bitmap: ImageWatermarkConfig -> PIL.Image
    """
    if canvas_box is None:
        canvas_box = (0, 0, surface.width, surface.height)
    ox, oy, canvas_w, canvas_h = canvas_box
    dx, dy = max(0, int(round(ox))), max(0, int(round(oy)))
    # 可绘制区域：水印画布与 surface 的交集
    clip = (
        dx, dy,
        min(surface.width, dx + max(1, int(round(canvas_w)))),
        min(surface.height, dy + max(1, int(round(canvas_h)))),
    )

    for layer, rect, font_size in layer_placements(watermark, canvas_w, canvas_h):
        tile = render_layer_tile(layer, rect, font_size, load_bitmap)
        left, top, tile = tile_position(rect, tile, layer.rotation)
        piece, dest = clip_tile(tile, dx + left, dy + top, clip)
        if piece is not None:
            surface.alpha_composite(piece, dest=dest)
    return surface


def clip_tile(tile, x, y, clip):
    """
    把位于 (x, y) 的贴图裁剪到 clip 区域内

    返回:
        (piece, (left, top))；贴图完全在区域外时 piece 为 None
    """
    left, top = max(x, clip[0]), max(y, clip[1])
    right, bottom = min(x + tile.width, clip[2]), min(y + tile.height, clip[3])
    if right <= left or bottom <= top:
        return None, (left, top)
    if (left, top, right, bottom) == (x, y, x + tile.width, y + tile.height):
        return tile, (left, top)
    return tile.crop((left - x, top - y, right - x, bottom - y)), (left, top)


def plan_output(source_w, source_h, crop, export_scale):
    crop_rect = derive_crop_area(source_w, source_h, crop)
    size = derive_output_dimensions(crop_rect.width, crop_rect.height, crop, export_scale)
    return crop_rect, size


def composite_image(source, crop, watermark, export_scale=100, load_bitmap=None):
    """
    生成最终画布

    1. 计算裁剪区域和输出尺寸
    2. 把裁剪区域缩放填满输出画布（不留边）
    3. 以输出画布尺寸为基准绘制每个可见图层
    """
    if load_bitmap is None:
        load_bitmap = _job_bitmap_loader()
    if source.mode != 'RGBA':
        source = source.convert('RGBA')
    crop_rect, size = plan_output(source.width, source.height, crop, export_scale)
    surface = source.resize(size, Image.LANCZOS, box=_source_box(crop_rect, source.width, source.height))
    return paint_watermarks(surface, watermark, load_bitmap=load_bitmap)


def _source_box(crop_rect, width, height):
    # resize 的 box 不能超出原图，浮点误差也要收回到边界内
    x0 = min(max(0.0, crop_rect.x), width - 1)
    y0 = min(max(0.0, crop_rect.y), height - 1)
    x1 = max(x0 + 1, min(float(width), crop_rect.x + crop_rect.width))
    y1 = max(y0 + 1, min(float(height), crop_rect.y + crop_rect.height))
    return (x0, y0, min(x1, float(width)), min(y1, float(height)))


def _job_bitmap_loader():
    # 单次合成内复用已解码的水印图
    decoded = {}

    def load(config):
        if config.image_data not in decoded:
            decoded[config.image_data] = decode_watermark(config)
        return decoded[config.image_data]
    return load
