import io

import pytest
from PIL import Image

from watermarker.compositor import (
    apply_opacity, clip_tile, composite_image, layer_placements, paint_watermarks, plan_output, tile_position,
    watermark_layers,
)
from watermarker.exporter import ExportJob, process_image_job
from watermarker.geometry import Rect
from watermarker.models import (
    CropSettings, ExportSettings, ImageWatermarkConfig, LayerStack, LegacyWatermark, TextWatermarkConfig,
    WatermarkLayer,
)
from watermarker.preview import compute_preview_layout, layer_display_bounds
from watermarker.watermark import create_text_watermark_image, measure_text

from conftest import BLUE, RED, encode_png


def close_to(pixel, color, tolerance=8):
    return all(abs(a - b) <= tolerance for a, b in zip(pixel[:3], color[:3]))


def logo_layer(config, **fields):
    return WatermarkLayer(id=fields.pop('id', 'logo'), name='Logo', type='image', image_config=config, **fields)


def test_end_to_end_freeform_crop_with_bottom_right_logo(logo_config):
    crop = CropSettings('freeform', 10, 10, 50, 50)
    stack = LayerStack([logo_layer(logo_config, anchor='bottom-right', scale=20)])

    crop_rect, size = plan_output(2000, 1000, crop, 100)
    assert crop_rect == Rect(200, 100, 1000, 500)
    assert size == (1000, 500)

    [(_, rect, _)] = layer_placements(stack, *size)
    assert rect == Rect(780, 380, 200, 100)
    assert rect.x + rect.width == size[0] - 20
    assert rect.y + rect.height == size[1] - 20

    source = Image.new('RGBA', (2000, 1000), RED)
    surface = composite_image(source, crop, stack, 100)
    assert surface.size == (1000, 500)
    assert close_to(surface.getpixel((880, 430)), BLUE)
    assert close_to(surface.getpixel((770, 430)), RED)
    assert close_to(surface.getpixel((10, 10)), RED)


def test_export_job_encodes_jpeg(logo_config):
    job = ExportJob(
        image_id='a', file_name='photo.png', source_data=encode_png(2000, 1000),
        crop=CropSettings('freeform', 10, 10, 50, 50),
        watermark=LayerStack([logo_layer(logo_config)]),
        settings=ExportSettings(format='jpg', quality=85, scale=100),
    )
    result = process_image_job(job)
    assert result.success and result.extension == 'jpg'
    decoded = Image.open(io.BytesIO(result.data))
    assert decoded.format == 'JPEG'
    assert decoded.size == (1000, 500)


def test_export_job_reports_decode_error():
    job = ExportJob('a', 'broken.png', b'not an image', CropSettings(), LayerStack(), ExportSettings())
    result = process_image_job(job)
    assert not result.success
    assert result.error


def test_rotation_keeps_box_center():
    rect = Rect(400, 200, 200, 100)
    tile = Image.new('RGBA', (200, 100), BLUE)
    left, top, rotated = tile_position(rect, tile, 90)
    assert rotated.size == (100, 200)
    assert (left + rotated.width / 2, top + rotated.height / 2) == rect.center


def test_rotated_layer_is_painted_around_center(logo_config):
    stack = LayerStack([logo_layer(logo_config, anchor='center', scale=20, rotation=90)])
    surface = composite_image(Image.new('RGBA', (1000, 500), RED), CropSettings(), stack)
    # 未旋转的框为 x 400~600, y 200~300；旋转 90 度后为 x 450~550, y 150~350
    assert close_to(surface.getpixel((500, 160)), BLUE)
    assert close_to(surface.getpixel((420, 250)), RED)


def test_invisible_layers_are_skipped(logo_config):
    stack = LayerStack([logo_layer(logo_config, anchor='center', visible=False)])
    assert watermark_layers(stack) == []
    surface = composite_image(Image.new('RGBA', (1000, 500), RED), CropSettings(), stack)
    assert close_to(surface.getpixel((500, 250)), RED)


def test_layers_paint_in_stack_order(make_png, logo_config):
    green = ImageWatermarkConfig(make_png(100, 50, (0, 255, 0, 255)), 100, 50, opacity=100)
    stack = LayerStack([
        logo_layer(logo_config, id='bottom', anchor='center'),
        logo_layer(green, id='top', anchor='center'),
    ])
    surface = composite_image(Image.new('RGBA', (1000, 500), RED), CropSettings(), stack)
    assert close_to(surface.getpixel((500, 250)), (0, 255, 0))


def test_legacy_watermark_fallback(logo_config):
    legacy = LegacyWatermark(type='image', anchor='top-left', scale=20, image_config=logo_config)
    [layer] = watermark_layers(legacy)
    assert layer.rotation == 0
    surface = composite_image(Image.new('RGBA', (1000, 500), RED), CropSettings(), legacy)
    assert close_to(surface.getpixel((120, 70)), BLUE)
    assert close_to(surface.getpixel((300, 300)), RED)


def test_legacy_text_watermark_is_drawn():
    legacy = LegacyWatermark(
        type='text', anchor='center', scale=50,
        text_config=TextWatermarkConfig(text='WATERMARK', font_color='#00ff00', opacity=100),
    )
    surface = composite_image(Image.new('RGBA', (1000, 500), (0, 0, 0, 255)), CropSettings(), legacy)
    assert surface.getchannel('G').getextrema()[1] > 200


def test_opacity_scales_alpha():
    tile = Image.new('RGBA', (4, 4), BLUE)
    assert apply_opacity(tile, 50).getpixel((0, 0))[3] == 128
    assert apply_opacity(tile, 0).getpixel((0, 0))[3] == 0
    assert apply_opacity(tile, 100) is tile


def test_text_tile_matches_measured_box():
    config = TextWatermarkConfig(text='Hello', font_color='#ff0000', bold=True, italic=True)
    width, height = measure_text(config, 40)
    assert width > 0 and height == 40
    tile = create_text_watermark_image(config, 40)
    assert tile.size == (int(round(width)), 40)
    assert tile.getbbox() is not None


def test_empty_text_layer_is_not_placed():
    layer = WatermarkLayer(id='t', name='t', type='text', text_config=TextWatermarkConfig(text=''))
    assert layer_placements(LayerStack([layer]), 1000, 500) == []


@pytest.mark.parametrize("anchor,custom", [('center', (0, 0)), ('custom', (30, 40))])
def test_preview_and_export_agree_on_placement(logo_config, anchor, custom):
    crop = CropSettings('freeform', 10, 10, 50, 50)
    layer = logo_layer(logo_config, anchor=anchor, custom_x=custom[0], custom_y=custom[1], scale=25)
    stack = LayerStack([layer])

    _, size = plan_output(2000, 1000, crop, 100)
    [(_, export_rect, _)] = layer_placements(stack, *size)

    class Item:
        watermark = stack

    layout = compute_preview_layout(2000, 1000, crop, 848, 848, 100)
    [(_, shown)] = layer_display_bounds(Item, layout)
    box = layout.crop_rect
    assert (shown.x - box.x) / box.width == pytest.approx(export_rect.x / size[0])
    assert (shown.y - box.y) / box.height == pytest.approx(export_rect.y / size[1])
    assert shown.width / box.width == pytest.approx(export_rect.width / size[0])


def test_layers_are_clipped_to_the_canvas_box(logo_config):
    surface = Image.new('RGBA', (300, 200), RED)
    # 100x50 的水印从画布 x=180 开始，超出 200 宽的画布
    stack = LayerStack([logo_layer(logo_config, anchor='custom', custom_x=90, custom_y=0, scale=50)])
    paint_watermarks(surface, stack, canvas_box=(50, 50, 200, 100))

    assert close_to(surface.getpixel((240, 60)), BLUE)
    assert close_to(surface.getpixel((260, 60)), RED)
    assert close_to(surface.getpixel((240, 40)), RED)


def test_clip_tile_only_crops_when_needed():
    tile = Image.new('RGBA', (100, 50), BLUE)
    piece, dest = clip_tile(tile, 10, 10, (0, 0, 300, 200))
    assert piece is tile and dest == (10, 10)

    piece, dest = clip_tile(tile, -20, 180, (0, 0, 300, 200))
    assert piece.size == (80, 20) and dest == (0, 180)

    piece, _ = clip_tile(tile, 400, 10, (0, 0, 300, 200))
    assert piece is None
