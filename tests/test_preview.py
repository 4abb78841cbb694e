import pytest

from watermarker.geometry import Rect
from watermarker.image_io import decode_image_bytes
from watermarker.layers import LayerModel
from watermarker.models import CropSettings, ImageWatermarkConfig
from watermarker.preview import (
    CropGestureController, LayerGestureController, WatermarkBitmapCache, clamp_zoom,
    compute_preview_layout, crop_handle_at, ensure_crop_values_initialized, hit_test,
    layer_handle_at, layout_for_image, normalize_angle, point_in_rotated_rect, render_preview,
    resize_crop,
)


def viewport_layout(collection):
    # 400x200 的图片在 448x448 视口中按 1:1 显示
    return lambda: layout_for_image(collection.selected_image, 448, 448)


@pytest.fixture
def layers(collection, logo_config):
    model = LayerModel(collection)
    model.add_layer('image', image_config=logo_config)
    return model


def test_layout_fits_viewport_with_margin():
    layout = compute_preview_layout(2000, 1000, CropSettings('freeform', 10, 10, 50, 50), 1048, 1048)
    assert (layout.display_width, layout.display_height) == (1000, 500)
    assert layout.scale == 0.5
    assert layout.crop_rect == Rect(100, 50, 500, 250)


def test_zoom_scales_display():
    layout = compute_preview_layout(2000, 1000, CropSettings(), 1048, 1048, zoom=200)
    assert (layout.display_width, layout.display_height) == (2000, 1000)
    assert clamp_zoom(10) == 25
    assert clamp_zoom(1000) == 400


def test_render_preview_matches_display_size(collection, layers, make_png):
    image = collection.selected_image
    layout = viewport_layout(collection)()
    cache = WatermarkBitmapCache()
    rendered = render_preview(decode_image_bytes(image.original_data), image, layout, cache)
    assert rendered.size == (layout.display_width, layout.display_height)
    render_preview(decode_image_bytes(image.original_data), image, layout, cache)
    assert cache.misses == 1 and cache.hits == 1


def test_bitmap_cache_is_lru_by_content(make_png):
    cache = WatermarkBitmapCache(maxsize=2)
    a, b, c = (ImageWatermarkConfig(make_png(8, 8, (i, 0, 0, 255)), 8, 8) for i in (1, 2, 3))
    cache.get(a)
    cache.get(b)
    # 同样内容的不同配置对象命中同一条缓存
    cache.get(ImageWatermarkConfig(a.image_data, 8, 8, opacity=10))
    assert cache.hits == 1
    cache.get(c)
    assert len(cache) == 2
    cache.get(b)
    assert cache.misses == 4


def test_hit_test_returns_topmost_visible_layer(collection, layers, logo_config):
    bottom = layers.selected_layer()
    top = layers.add_layer('image', image_config=logo_config)
    layout = viewport_layout(collection)()
    image = collection.selected_image

    assert hit_test(image, layout, 340, 160).id == top.id
    layers.toggle_visibility(top.id)
    assert hit_test(image, layout, 340, 160).id == bottom.id
    assert hit_test(image, layout, 10, 10) is None


def test_rotated_hit_area():
    rect = Rect(0, 0, 100, 20)
    assert point_in_rotated_rect(90, 10, rect, 0)
    assert not point_in_rotated_rect(90, 10, rect, 90)
    assert point_in_rotated_rect(50, 50, rect, 90)


def test_drag_moves_layer_to_custom_anchor(collection, layers):
    gestures = LayerGestureController(layers, viewport_layout(collection))
    depth = len(layers.history.undo_stack)

    # 80x40 的水印位于 (300, 140)
    assert gestures.begin_drag(layers.selected_layer().id, 340, 160)
    gestures.update(290, 160)
    gestures.update(240, 160)
    gestures.end()

    layer = layers.selected_layer()
    assert layer.anchor == 'custom'
    assert layer.custom_x == pytest.approx(50)
    assert layer.custom_y == pytest.approx(70)
    assert len(layers.history.undo_stack) == depth + 1


def test_drag_is_clamped(collection, layers):
    gestures = LayerGestureController(layers, viewport_layout(collection))
    gestures.begin_drag(layers.selected_layer().id, 340, 160)
    gestures.update(5000, -5000)
    gestures.end()
    assert (layers.selected_layer().custom_x, layers.selected_layer().custom_y) == (110, -10)


def test_locked_layer_ignores_gestures(collection, layers):
    layers.update_selected_layer({'locked': True}, commit=True)
    depth = len(layers.history.undo_stack)
    gestures = LayerGestureController(layers, viewport_layout(collection))
    assert not gestures.begin_drag(layers.selected_layer().id, 340, 160)
    gestures.update(0, 0)
    gestures.end()
    assert layers.selected_layer().anchor == 'bottom-right'
    assert len(layers.history.undo_stack) == depth


def test_resize_is_clamped(collection, layers):
    gestures = LayerGestureController(layers, viewport_layout(collection))
    gestures.begin_resize(layers.selected_layer().id, 380, 180)
    gestures.update(1380, 1180)
    gestures.end()
    assert layers.selected_layer().scale == 50


def test_rotate_follows_pointer_angle(collection, layers):
    gestures = LayerGestureController(layers, viewport_layout(collection))
    # 水印中心为 (340, 160)，从正右方拖到正下方
    gestures.begin_rotate(layers.selected_layer().id, 400, 160)
    gestures.update(340, 220)
    gestures.end()
    assert layers.selected_layer().rotation == 90


def test_handles_follow_rotation():
    rect = Rect(100, 100, 100, 40)
    assert layer_handle_at(rect, 0, 200, 140) == 'resize'
    assert layer_handle_at(rect, 0, 150, 76) == 'rotate'
    # 旋转 180 度后缩放手柄到了左上角
    assert layer_handle_at(rect, 180, 100, 100) == 'resize'
    assert normalize_angle(190) == -170


def test_crop_handles():
    rect = Rect(100, 100, 200, 100)
    assert crop_handle_at(rect, 100, 100) == 'nw'
    assert crop_handle_at(rect, 200, 150) == 'move'
    assert crop_handle_at(rect, 300, 150) == 'e'
    assert crop_handle_at(rect, 200, 200) == 's'
    assert crop_handle_at(rect, 0, 0) is None


def test_crop_gesture_resizes_and_commits_once(collection):
    collection.set_crop_preset('freeform')
    depth = len(collection.history.undo_stack)
    gestures = CropGestureController(collection, viewport_layout(collection))

    assert gestures.begin('se', 400, 200)
    gestures.update(300, 150)
    gestures.update(200, 100)
    gestures.end()

    crop = collection.selected_image.crop
    assert (crop.x, crop.y, crop.width, crop.height) == (0, 0, 50, 50)
    assert crop.user_modified
    assert len(collection.history.undo_stack) == depth + 1


def test_crop_gesture_not_available_for_original(collection):
    gestures = CropGestureController(collection, viewport_layout(collection))
    assert not gestures.begin('move', 10, 10)


def test_resize_crop_limits():
    assert resize_crop('se', (0, 0, 50, 50), -100, -100, None, 2) == (0, 0, 10, 10)
    assert resize_crop('nw', (20, 20, 50, 50), -50, -50, None, 2) == (0, 0, 70, 70)
    # 锁定比例时只响应四角
    assert resize_crop('e', (0, 0, 50, 50), 10, 0, 1, 2) == (0, 0, 50, 50)
    x, y, w, h = resize_crop('se', (0, 0, 40, 80), 10, 0, 1, 2)
    assert (w, h) == (50, 100)


def test_ratio_crop_initialised_to_centered_percentages(collection):
    image = collection.add_image('/photos/wide.png', b'', 2000, 1000)
    image.crop = CropSettings('16:9')
    ensure_crop_values_initialized(image)
    assert image.crop.width == pytest.approx(88.89, abs=0.01)
    assert image.crop.x == pytest.approx(5.56, abs=0.01)
    assert image.crop.height == 100
