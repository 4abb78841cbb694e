# watermarker/preview.py
"""
交互式预览适配

把几何内核的结果映射到显示坐标：预览图、裁剪框、图层边框，
以及把拖动/缩放/旋转手势换算回图层与裁剪设置。
绘制与导出使用同一个 paint_watermarks，保证所见即所得。
"""
import hashlib
import math
from collections import OrderedDict
from dataclasses import dataclass

from PIL import Image

from watermarker.compositor import decode_watermark, layer_placements, paint_watermarks
from watermarker.geometry import (
    Rect, centered_crop_percent, derive_crop_area, fit_size, preset_aspect_ratio,
)

PREVIEW_MARGIN = 48
MIN_LAYER_SCALE = 5
MAX_LAYER_SCALE = 50
CUSTOM_MIN = -10
CUSTOM_MAX = 110
MIN_CROP_PERCENT = 10
OUTSIDE_CROP_SHADE = (0, 0, 0, 128)
MIN_ZOOM = 25
MAX_ZOOM = 400
HANDLE_TOLERANCE = 8
ROTATE_HANDLE_OFFSET = 24


@dataclass
class PreviewLayout:
    display_width: int
    display_height: int
    scale: float  # 显示像素 / 源图像素
    crop_rect: Rect  # 显示坐标系中的裁剪区域


def compute_preview_layout(image_w, image_h, crop, viewport_w, viewport_h, zoom=100):
    """
    计算预览布局：等比适配视口（四周留白），再乘以缩放百分比
    """
    max_w = max(1, viewport_w - PREVIEW_MARGIN)
    max_h = max(1, viewport_h - PREVIEW_MARGIN)
    base_w, base_h = fit_size(image_w, image_h, max_w, max_h)
    zoom_scale = zoom / 100
    display_w = max(1, int(math.floor(base_w * zoom_scale + 0.5)))
    display_h = max(1, int(math.floor(base_h * zoom_scale + 0.5)))
    scale = display_w / image_w
    area = derive_crop_area(image_w, image_h, crop)
    crop_rect = Rect(area.x * scale, area.y * scale, area.width * scale, area.height * scale)
    return PreviewLayout(display_w, display_h, scale, crop_rect)


def layout_for_image(image, viewport_w, viewport_h, zoom=100):
    return compute_preview_layout(image.width, image.height, image.crop, viewport_w, viewport_h, zoom)


def clamp_zoom(level):
    return max(MIN_ZOOM, min(MAX_ZOOM, level))


class WatermarkBitmapCache:
    """预览专用的水印位图 LRU 缓存，按内容哈希索引"""

    def __init__(self, maxsize=8):
        self.maxsize = maxsize
        self._items = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self):
        return len(self._items)

    @staticmethod
    def key_for(data):
        return hashlib.sha1(data).hexdigest()

    def get(self, config):
        key = self.key_for(config.image_data)
        if key in self._items:
            self._items.move_to_end(key)
            self.hits += 1
            return self._items[key]
        self.misses += 1
        bitmap = decode_watermark(config)
        self._items[key] = bitmap
        if len(self._items) > self.maxsize:
            self._items.popitem(last=False)
        return bitmap

    def clear(self):
        self._items.clear()


def render_preview(preview_bitmap, image, layout, cache=None, shade_outside=True):
    """
    生成预览画面

    参数:
        preview_bitmap: 源图（可以是缩小后的预览图）
        image: ImageItem
        layout: PreviewLayout
        cache: WatermarkBitmapCache
        shade_outside: 非 original 预设时把裁剪框外区域压暗
    """
    load_bitmap = cache.get if cache is not None else decode_watermark
    size = (layout.display_width, layout.display_height)
    base = preview_bitmap.convert('RGBA').resize(size, Image.LANCZOS)
    crop = layout.crop_rect
    paint_watermarks(base, image.watermark, canvas_box=tuple(crop), load_bitmap=load_bitmap)

    if shade_outside and image.crop.preset != 'original':
        shade = Image.new('RGBA', size, OUTSIDE_CROP_SHADE)
        hole = Image.new('RGBA', (max(1, round(crop.width)), max(1, round(crop.height))), (0, 0, 0, 0))
        shade.paste(hole, (round(crop.x), round(crop.y)))
        base.alpha_composite(shade)
    return base


def layer_display_bounds(image, layout):
    """
    返回 [(layer, Rect)]，Rect 为显示坐标中未旋转的图层框（自底向上）
    """
    crop = layout.crop_rect
    bounds = []
    for layer, rect, _ in layer_placements(image.watermark, crop.width, crop.height):
        bounds.append((layer, Rect(crop.x + rect.x, crop.y + rect.y, rect.width, rect.height)))
    return bounds


def point_in_rotated_rect(px, py, rect, rotation):
    if rotation:
        # 把点反向旋转回图层的局部坐标
        cx, cy = rect.center
        px, py = rotate_point(px, py, cx, cy, -rotation)
    return rect.x <= px <= rect.x + rect.width and rect.y <= py <= rect.y + rect.height


def hit_test(image, layout, x, y):
    """返回 (x, y) 处最上层的图层，没有则返回 None"""
    for layer, rect in reversed(layer_display_bounds(image, layout)):
        if point_in_rotated_rect(x, y, rect, layer.rotation):
            return layer
    return None


def rotate_point(px, py, cx, cy, rotation):
    theta = math.radians(rotation)
    dx, dy = px - cx, py - cy
    return (cx + dx * math.cos(theta) - dy * math.sin(theta),
            cy + dx * math.sin(theta) + dy * math.cos(theta))


def rotated_corners(rect, rotation):
    """图层框四角（左上、右上、右下、左下）旋转后的显示坐标"""
    cx, cy = rect.center
    corners = [
        (rect.x, rect.y), (rect.x + rect.width, rect.y),
        (rect.x + rect.width, rect.y + rect.height), (rect.x, rect.y + rect.height),
    ]
    return [rotate_point(x, y, cx, cy, rotation) for x, y in corners]


def layer_handle_points(rect, rotation):
    """缩放手柄在右下角，旋转手柄在上边中点的上方"""
    cx, cy = rect.center
    return {
        'resize': rotate_point(rect.x + rect.width, rect.y + rect.height, cx, cy, rotation),
        'rotate': rotate_point(cx, rect.y - ROTATE_HANDLE_OFFSET, cx, cy, rotation),
    }


def layer_handle_at(rect, rotation, x, y, tolerance=HANDLE_TOLERANCE):
    for name, (hx, hy) in layer_handle_points(rect, rotation).items():
        if abs(x - hx) <= tolerance and abs(y - hy) <= tolerance:
            return name
    return None


def crop_handle_at(rect, x, y, tolerance=HANDLE_TOLERANCE):
    """
    返回 (x, y) 处的裁剪框手柄

    返回:
        'nw'/'n'/'ne'/'e'/'se'/'s'/'sw'/'w'，框内为 'move'，框外为 None
    """
    left, top = rect.x, rect.y
    right, bottom = rect.x + rect.width, rect.y + rect.height
    near_left, near_right = abs(x - left) <= tolerance, abs(x - right) <= tolerance
    near_top, near_bottom = abs(y - top) <= tolerance, abs(y - bottom) <= tolerance
    inside_x = left - tolerance <= x <= right + tolerance
    inside_y = top - tolerance <= y <= bottom + tolerance
    if not (inside_x and inside_y):
        return None
    vertical = 'n' if near_top else 's' if near_bottom else ''
    horizontal = 'w' if near_left else 'e' if near_right else ''
    if vertical or horizontal:
        return vertical + horizontal
    return 'move'


def normalize_angle(angle):
    angle = (angle + 180) % 360 - 180
    return angle


class LayerGestureController:
    """
    图层拖动/缩放/旋转手势

    拖动过程中只更新图层（不写历史），手势结束时写入一条历史记录。
    锁定的图层不响应手势。
    """

    def __init__(self, layer_model, get_layout):
        self.layer_model = layer_model
        self.get_layout = get_layout
        self.mode = None
        self._start = {}

    @property
    def active(self):
        return self.mode is not None

    def _bounds_for(self, layer_id):
        image = self.layer_model.image
        layout = self.get_layout()
        for layer, rect in layer_display_bounds(image, layout):
            if layer.id == layer_id:
                return layer, rect, layout
        return None, None, layout

    def _begin(self, mode, layer_id, x, y):
        self.layer_model.select_layer(layer_id)
        layer, rect, layout = self._bounds_for(layer_id)
        if layer is None or layer.locked:
            return False
        self.layer_model.begin_gesture()
        self.mode = mode
        self._start = {
            'x': x, 'y': y, 'rect': rect, 'layout': layout,
            'scale': layer.scale, 'rotation': layer.rotation,
        }
        return True

    def begin_drag(self, layer_id, x, y):
        return self._begin('drag', layer_id, x, y)

    def begin_resize(self, layer_id, x, y):
        return self._begin('resize', layer_id, x, y)

    def begin_rotate(self, layer_id, x, y):
        if not self._begin('rotate', layer_id, x, y):
            return False
        cx, cy = self._start['rect'].center
        self._start['angle'] = math.degrees(math.atan2(y - cy, x - cx))
        return True

    def update(self, x, y):
        if self.mode is None:
            return
        start = self._start
        rect, crop = start['rect'], start['layout'].crop_rect
        if self.mode == 'drag':
            left = rect.x + (x - start['x'])
            top = rect.y + (y - start['y'])
            custom_x = (left - crop.x) / crop.width * 100
            custom_y = (top - crop.y) / crop.height * 100
            self.layer_model.update_selected_layer({
                'anchor': 'custom',
                'custom_x': max(CUSTOM_MIN, min(CUSTOM_MAX, custom_x)),
                'custom_y': max(CUSTOM_MIN, min(CUSTOM_MAX, custom_y)),
            })
        elif self.mode == 'resize':
            # 对角线缩放，取两个方向中较大的位移
            delta = max(x - start['x'], y - start['y'])
            scale = start['scale'] + delta / rect.width * start['scale'] if rect.width else start['scale']
            self.layer_model.update_selected_layer({
                'scale': max(MIN_LAYER_SCALE, min(MAX_LAYER_SCALE, scale)),
            })
        elif self.mode == 'rotate':
            cx, cy = rect.center
            angle = math.degrees(math.atan2(y - cy, x - cx))
            rotation = normalize_angle(start['rotation'] + angle - start['angle'])
            self.layer_model.update_selected_layer({'rotation': round(rotation)})

    def end(self):
        if self.mode is None:
            return
        self.mode = None
        self._start = {}
        self.layer_model.end_gesture()


def ensure_crop_values_initialized(image):
    """
    比例预设在首次拖动前把默认百分比换成居中裁剪的百分比，
    这样拖动起点与当前显示的裁剪框一致
    """
    crop = image.crop
    if crop.preset in ('freeform', 'original'):
        return
    ratio = preset_aspect_ratio(crop.preset)
    if ratio is None:
        return
    centered = centered_crop_percent(image.width / image.height, ratio)
    cx, cy = crop.x + crop.width / 2, crop.y + crop.height / 2
    ex, ey = centered.center
    is_default = abs(cx - ex) < 0.1 and abs(cy - ey) < 0.1 and abs(crop.width - centered.width) < 0.1
    if is_default or (crop.width == 100 and crop.height == 100):
        crop.x, crop.y, crop.width, crop.height = centered


class CropGestureController:
    """
    裁剪框移动/缩放

    坐标为显示像素，内部换算为百分比；非 freeform 预设锁定比例。
    """

    def __init__(self, collection, get_layout):
        self.collection = collection
        self.get_layout = get_layout
        self.handle = None
        self._start = {}
        self._before = None

    @property
    def active(self):
        return self.handle is not None

    def begin(self, handle, x, y):
        """handle: 'move' 或 n/s/e/w/ne/nw/se/sw"""
        image = self.collection.selected_image
        if image is None or image.crop.preset == 'original':
            return False
        self._before = image.snapshot()
        ensure_crop_values_initialized(image)
        crop = image.crop
        ratio = None if crop.preset == 'freeform' else preset_aspect_ratio(crop.preset)
        self.handle = handle
        self._start = {
            'x': x, 'y': y,
            'crop': (crop.x, crop.y, crop.width, crop.height),
            'ratio': ratio,
            'layout': self.get_layout(),
        }
        return True

    def update(self, x, y):
        if self.handle is None:
            return
        image = self.collection.selected_image
        layout = self._start['layout']
        dx = (x - self._start['x']) / layout.display_width * 100
        dy = (y - self._start['y']) / layout.display_height * 100
        sx, sy, sw, sh = self._start['crop']
        if self.handle == 'move':
            nx = max(0, min(100 - sw, sx + dx))
            ny = max(0, min(100 - sh, sy + dy))
            new = (nx, ny, sw, sh)
        else:
            new = resize_crop(self.handle, self._start['crop'], dx, dy,
                              self._start['ratio'], image.width / image.height)
        image.crop.x, image.crop.y, image.crop.width, image.crop.height = new
        image.crop.user_modified = True

    def end(self):
        if self.handle is None:
            return
        self.handle = None
        before, self._before = self._before, None
        image = self.collection.selected_image
        if image is not None and before is not None and image.snapshot() != before:
            self.collection.history.commit_single(image, before)


def resize_crop(handle, start, dx, dy, ratio, img_ratio):
    """
    按拖动手柄调整裁剪框（百分比），最小边长 10%，限制在 0~100 内

    ratio 不为 None 时只响应四角手柄并保持比例
    """
    sx, sy, sw, sh = start
    x, y, w, h = sx, sy, sw, sh
    m = MIN_CROP_PERCENT

    if ratio is not None:
        if handle not in ('nw', 'ne', 'se', 'sw'):
            return start
        effective = ratio / img_ratio
        if handle in ('se', 'ne'):
            w = max(m, sw + dx)
        elif handle in ('nw', 'sw'):
            w = max(m, sw - dx)
            x = sx + sw - w
        h = w / effective
        if handle in ('nw', 'ne'):
            y = sy + sh - h
    else:
        if 'e' in handle:
            w = max(m, sw + dx)
        if 'w' in handle:
            w = max(m, sw - dx)
            x = sx + dx
            if x < 0:
                w += x
                x = 0
        if 's' in handle:
            h = max(m, sh + dy)
        if 'n' in handle:
            h = max(m, sh - dy)
            y = sy + dy
            if y < 0:
                h += y
                y = 0

    x, y = max(0, x), max(0, y)
    if x + w > 100:
        w = 100 - x
        if ratio is not None:
            h = w / (ratio / img_ratio)
    if y + h > 100:
        h = 100 - y
        if ratio is not None:
            w = h * (ratio / img_ratio)
    return (x, y, max(m, w), max(m, h))
