from watermarker.history import MAX_HISTORY, HistoryEntry, HistoryManager
from watermarker.layers import LayerModel


def test_n_commits_then_n_undos_restore_original_state(collection):
    image = collection.selected_image
    original = image.snapshot()
    for i in range(5):
        collection.set_crop_rect(i + 1, i + 2, 50, 40)
    assert image.crop.x == 5

    for _ in range(5):
        assert collection.history.undo()
    assert image.snapshot() == original
    assert not collection.history.can_undo


def test_redo_reapplies_after_state(collection):
    image = collection.selected_image
    collection.set_crop_rect(10, 10, 50, 50)
    after = image.snapshot()
    collection.history.undo()
    assert image.crop.x == 0
    collection.history.redo()
    assert image.snapshot() == after


def test_commit_clears_redo_stack(collection):
    collection.set_crop_rect(10, 10, 50, 50)
    collection.set_crop_rect(20, 20, 50, 50)
    collection.history.undo()
    collection.history.undo()
    assert collection.history.can_redo

    collection.set_crop_rect(30, 30, 50, 50)
    assert collection.history.redo_stack == []
    assert not collection.history.can_redo


def test_undo_stack_evicts_oldest_entry(collection):
    image = collection.selected_image
    for i in range(MAX_HISTORY + 1):
        collection.set_crop_rect(i + 1, 0, 50, 50)
    assert len(collection.history.undo_stack) == MAX_HISTORY

    while collection.history.undo():
        pass
    # 第一条记录已被丢弃，只能回到它之后的状态
    assert image.crop.x == 1


def test_history_does_not_alias_live_state(collection):
    image = collection.selected_image
    collection.set_crop_rect(10, 10, 50, 50)
    entry = collection.history.undo_stack[-1]

    image.crop.x = 77
    assert entry.after.crop.x == 10
    assert entry.before.crop.x == 0

    collection.history.undo()
    image.crop.width = 5
    assert collection.history.redo_stack[-1].after.crop.width == 50


def test_layer_snapshots_are_deep_copies(collection):
    layers = LayerModel(collection)
    layer = layers.add_layer('text')
    entry = collection.history.undo_stack[-1]
    layer.text_config.text = "changed"
    assert entry.after.watermark.layers[0].text_config.text == ''


def test_entries_for_removed_images_are_ignored(collection):
    image = collection.selected_image
    collection.set_crop_rect(10, 10, 50, 50)
    collection.remove(image.id)

    assert collection.history.undo() is False
    assert not collection.history.can_undo
    assert not collection.history.can_redo


def test_listener_receives_availability(collection):
    seen = []
    collection.history.add_listener(lambda can_undo, can_redo: seen.append((can_undo, can_redo)))
    collection.set_crop_rect(10, 10, 50, 50)
    collection.history.undo()
    collection.history.redo()
    assert seen == [(True, False), (False, True), (True, False)]


def test_apply_to_all_is_a_single_entry(collection, logo_config):
    layers = LayerModel(collection)
    layers.add_layer('image', image_config=logo_config)
    before = {img.id: img.snapshot() for img in collection}
    depth = len(collection.history.undo_stack)

    layers.apply_all_layers_to_all()
    assert len(collection.history.undo_stack) == depth + 1
    assert all(len(img.watermark.layers) == 1 for img in collection)

    collection.history.undo()
    assert {img.id: img.snapshot() for img in collection} == before


def test_all_entry_skips_missing_images(collection):
    before = {img.id: img.snapshot() for img in collection}
    for img in collection:
        img.crop.x = 42
    collection.history.commit_all(before, collection.images)
    removed = collection.images[1]
    collection.remove(removed.id)

    assert collection.history.undo()
    assert all(img.crop.x == 0 for img in collection)
    mirror = collection.history.redo_stack[-1]
    assert removed.id not in mirror.all_before


def test_manager_with_custom_capacity():
    history = HistoryManager(lambda image_id: None, max_entries=2)
    for _ in range(3):
        history.commit(HistoryEntry('all'))
    assert len(history.undo_stack) == 2
    # 所有记录都引用不存在的图片
    assert history.undo() is False
