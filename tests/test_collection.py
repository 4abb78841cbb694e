import pytest
from PIL import Image

from demo_export import demo
from watermarker.collection import ImageCollection
from watermarker.image_io import is_image_file, read_image_file
from watermarker.models import CropSettings, DefaultWatermarkTemplate, LayerStack, WatermarkLayer


def test_add_paths_skips_duplicates_and_reports_errors(tmp_path, make_png):
    good = tmp_path / "good.png"
    good.write_bytes(make_png(40, 20))
    bad = tmp_path / "bad.jpg"
    bad.write_bytes(b"garbage")

    images = ImageCollection()
    added, errors = images.add_paths([good, bad, good])
    assert [img.file_name for img in added] == ["good.png"]
    assert list(errors) == [str(bad)]
    assert (added[0].width, added[0].height) == (40, 20)
    assert images.selected_image_id == added[0].id


def test_new_images_copy_the_default_template():
    layer = WatermarkLayer(id='fixed', name='Logo', type='text')
    template = DefaultWatermarkTemplate(LayerStack([layer], 'fixed'), CropSettings('1:1'))
    images = ImageCollection(template)
    first = images.add_image('/a.png', b'', 10, 10)
    second = images.add_image('/b.png', b'', 10, 10)

    assert first.crop.preset == '1:1'
    assert first.watermark.layers[0].id != 'fixed'
    assert first.watermark.layers[0].id != second.watermark.layers[0].id
    assert first.watermark.selected_layer_id == first.watermark.layers[0].id
    first.crop.preset = 'freeform'
    assert template.crop.preset == '1:1'


def test_remove_selects_neighbour(collection):
    first, middle, last = collection.images
    collection.select(middle.id)
    collection.remove(middle.id)
    assert collection.selected_image_id == last.id
    collection.remove(last.id)
    assert collection.selected_image_id == first.id
    collection.remove(first.id)
    assert collection.selected_image is None


def test_clear_drops_history(collection):
    collection.set_crop_rect(10, 10, 50, 50)
    collection.clear()
    assert len(collection) == 0
    assert not collection.history.can_undo


def test_set_crop_preset_resets_percentages(collection):
    collection.set_crop_rect(10, 10, 50, 50)
    collection.set_crop_preset('16:9')
    crop = collection.selected_image.crop
    assert (crop.preset, crop.x, crop.width, crop.user_modified) == ('16:9', 0, 100, False)
    with pytest.raises(ValueError):
        collection.set_crop_preset('panorama')


def test_read_image_file_applies_exif_orientation(tmp_path):
    path = tmp_path / "rotated.jpg"
    exif = Image.Exif()
    exif[0x0112] = 6  # 顺时针旋转 90 度
    Image.new('RGB', (40, 20), (255, 0, 0)).save(path, exif=exif)
    _, width, height = read_image_file(path)
    assert (width, height) == (20, 40)
    assert is_image_file(path)
    assert not is_image_file(tmp_path / "notes.txt")


def test_demo_exports_folder(tmp_path, make_png):
    src = tmp_path / "src"
    src.mkdir()
    (src / "a.png").write_bytes(make_png(300, 200))
    (src / "b.png").write_bytes(make_png(200, 300))
    (src / "readme.txt").write_text("not an image")

    summary = demo(src, tmp_path / "out", text="Demo", isolation='thread')
    assert summary.exported == 2
    assert (tmp_path / "out" / "a_watermarked.jpg").exists()
    assert (tmp_path / "out" / "b_watermarked.jpg").exists()
