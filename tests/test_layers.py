import pytest

from watermarker.errors import LayerCapacityError
from watermarker.layers import LayerModel, create_default_layer, legacy_to_layer_stack
from watermarker.models import MAX_LAYERS, LayerStack, LegacyWatermark, TextWatermarkConfig


@pytest.fixture
def layers(collection):
    return LayerModel(collection)


def test_add_layer_selects_and_names(layers):
    first = layers.add_layer('text')
    second = layers.add_layer('text')
    logo = layers.add_layer('image')
    assert [first.name, second.name, logo.name] == ['Text Layer', 'Text Layer 2', 'Image Layer']
    assert layers.stack.selected_layer_id == logo.id


def test_add_beyond_capacity_is_rejected(layers):
    for _ in range(MAX_LAYERS):
        layers.add_layer('text')
    depth = len(layers.history.undo_stack)

    with pytest.raises(LayerCapacityError) as excinfo:
        layers.add_layer('text')
    assert excinfo.value.limit == MAX_LAYERS
    assert len(layers.stack.layers) == MAX_LAYERS
    assert len(layers.history.undo_stack) == depth


def test_remove_selects_layer_at_same_position(layers):
    a, b, c = (layers.add_layer('text') for _ in range(3))
    layers.select_layer(b.id)
    layers.remove_selected_layer()
    assert layers.stack.selected_layer_id == c.id

    # 删除顶层时选中下面一层
    layers.remove_selected_layer()
    assert layers.stack.selected_layer_id == a.id

    layers.remove_selected_layer()
    assert layers.stack.layers == []
    assert layers.stack.selected_layer_id is None


def test_move_layer_reorders(layers):
    a, b, c = (layers.add_layer('text') for _ in range(3))
    layers.move_layer(0, 2)
    assert [layer.id for layer in layers.stack.layers] == [b.id, c.id, a.id]
    with pytest.raises(IndexError):
        layers.move_layer(0, 3)


def test_toggle_visibility_is_undoable(layers):
    layer = layers.add_layer('text')
    layers.toggle_visibility(layer.id)
    assert not layers.stack.find(layer.id).visible
    layers.history.undo()
    assert layers.stack.find(layer.id).visible


def test_update_selected_layer_commit_flag(layers):
    layers.add_layer('text')
    depth = len(layers.history.undo_stack)
    layers.update_selected_layer({'scale': 30})
    assert len(layers.history.undo_stack) == depth
    layers.update_selected_layer({'scale': 35}, commit=True, text_config={'text': 'hi'})
    assert len(layers.history.undo_stack) == depth + 1
    assert layers.selected_layer().text_config.text == 'hi'


def test_update_unknown_field_raises(layers):
    layers.add_layer('text')
    with pytest.raises(AttributeError):
        layers.update_selected_layer({'colour': 'red'})


def test_set_opacity_targets_active_config(layers, logo_config):
    layers.add_layer('image', image_config=logo_config)
    layers.set_opacity(40, commit=True)
    assert layers.selected_layer().opacity == 40
    layers.add_layer('text')
    layers.set_opacity(25)
    assert layers.selected_layer().text_config.opacity == 25


def test_gesture_produces_single_entry(layers):
    layers.add_layer('text')
    depth = len(layers.history.undo_stack)

    layers.begin_gesture()
    assert layers.in_gesture
    for x in range(10, 60, 10):
        layers.update_selected_layer({'anchor': 'custom', 'custom_x': x})
    layers.end_gesture()
    assert len(layers.history.undo_stack) == depth + 1

    layers.history.undo()
    assert layers.selected_layer().anchor == 'bottom-right'


def test_gesture_without_change_adds_nothing(layers):
    layers.add_layer('text')
    depth = len(layers.history.undo_stack)
    layers.begin_gesture()
    layers.end_gesture()
    assert len(layers.history.undo_stack) == depth


def test_apply_all_layers_regenerates_ids(collection, layers, logo_config):
    layers.add_layer('image', image_config=logo_config)
    layers.add_layer('text')
    source_ids = {layer.id for layer in layers.stack.layers}

    layers.apply_all_layers_to_all()
    seen = set(source_ids)
    for image in collection.images[1:]:
        ids = {layer.id for layer in image.watermark.layers}
        assert len(ids) == 2
        assert not ids & seen
        seen |= ids
        assert image.watermark.selected_layer_id == image.watermark.layers[-1].id
        assert [layer.name for layer in image.watermark.layers] == ['Image Layer', 'Text Layer']


def test_apply_selected_layer_skips_full_targets(collection, layers):
    full = collection.images[2]
    collection.select(full.id)
    for _ in range(MAX_LAYERS):
        layers.add_layer('text')

    collection.select(collection.images[0].id)
    layer = layers.add_layer('text')
    depth = len(layers.history.undo_stack)
    skipped = layers.apply_selected_layer_to_all()

    assert skipped == [full.id]
    assert len(layers.history.undo_stack) == depth + 1
    middle = collection.images[1].watermark
    assert len(middle.layers) == 1 and middle.layers[0].id != layer.id
    assert len(full.watermark.layers) == MAX_LAYERS


def test_legacy_watermark_migrates_on_add(collection, layers):
    image = collection.selected_image
    image.watermark = LegacyWatermark(type='text', anchor='top-left', text_config=TextWatermarkConfig(text='hello'))
    layers.add_layer('image')
    stack = image.watermark
    assert isinstance(stack, LayerStack)
    assert [layer.name for layer in stack.layers] == ['Migrated Text', 'Image Layer']
    assert stack.layers[0].anchor == 'top-left'


def test_empty_legacy_watermark_becomes_empty_stack():
    assert legacy_to_layer_stack(LegacyWatermark(type='image')) == LayerStack()


def test_default_layer_counts_same_type_only():
    existing = [create_default_layer('image'), create_default_layer('text')]
    assert create_default_layer('text', existing).name == 'Text Layer 2'
    assert create_default_layer('image', []).text_config is None
