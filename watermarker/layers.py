# watermarker/layers.py
"""
图层管理

所有操作作用于当前选中图片的图层栈。
“提交”型修改（失焦/变更/手势结束）写入撤销历史，
拖动或滑块的连续更新不写历史，直到手势结束。
"""
import logging

from watermarker.errors import LayerCapacityError
from watermarker.models import (
    MAX_LAYERS, LayerStack, LegacyWatermark, TextWatermarkConfig,
    WatermarkLayer, generate_id,
)

logger = logging.getLogger(__name__)

LAYER_BASE_NAMES = {'image': 'Image Layer', 'text': 'Text Layer'}


def legacy_to_layer_stack(legacy):
    """把旧版单水印转换为图层栈；没有可用水印内容时返回空栈"""
    has_image = legacy.type == 'image' and legacy.image_config and legacy.image_config.image_data
    has_text = legacy.type == 'text' and legacy.text_config and legacy.text_config.text
    if not has_image and not has_text:
        return LayerStack()

    layer = WatermarkLayer(
        id=generate_id(),
        name='Migrated Logo' if legacy.type == 'image' else 'Migrated Text',
        type=legacy.type,
        anchor=legacy.anchor,
        custom_x=legacy.custom_x,
        custom_y=legacy.custom_y,
        scale=legacy.scale,
        rotation=0,
        image_config=legacy.image_config if legacy.type == 'image' else None,
        text_config=legacy.text_config if legacy.type == 'text' else None,
    ).clone()
    return LayerStack([layer], layer.id)


def ensure_layer_stack(image):
    if isinstance(image.watermark, LegacyWatermark):
        image.watermark = legacy_to_layer_stack(image.watermark)
    return image.watermark


def create_default_layer(layer_type, existing_layers=()):
    count = sum(1 for layer in existing_layers if layer.type == layer_type)
    base = LAYER_BASE_NAMES[layer_type]
    return WatermarkLayer(
        id=generate_id(),
        name=f"{base} {count + 1}" if count > 0 else base,
        type=layer_type,
        text_config=TextWatermarkConfig() if layer_type == 'text' else None,
    )


def _set_fields(target, changes):
    for key, value in changes.items():
        if not hasattr(target, key):
            raise AttributeError(f"{type(target).__name__} 没有字段 {key}")
        setattr(target, key, value)


class LayerModel:
    def __init__(self, collection):
        self.collection = collection
        self._gesture_before = None

    @property
    def history(self):
        return self.collection.history

    @property
    def image(self):
        return self.collection.selected_image

    @property
    def stack(self):
        image = self.image
        if image is None or not isinstance(image.watermark, LayerStack):
            return None
        return image.watermark

    def selected_layer(self):
        stack = self.stack
        return stack.selected if stack else None

    def _commit(self, image, before):
        self.history.commit_single(image, before)

    def add_layer(self, layer_type, image_config=None, text_config=None):
        """
        添加图层并选中

        超过 MAX_LAYERS 时抛出 LayerCapacityError，不会创建任何图层。
        """
        image = self.image
        if image is None:
            return None
        before = image.snapshot()
        stack = ensure_layer_stack(image)
        if stack.is_full:
            image.restore(before)
            raise LayerCapacityError(MAX_LAYERS)

        layer = create_default_layer(layer_type, stack.layers)
        if image_config is not None:
            layer.image_config = image_config
        if text_config is not None:
            layer.text_config = text_config
        stack.layers.append(layer)
        stack.selected_layer_id = layer.id
        self._commit(image, before)
        logger.debug("layer added: %s (%s)", layer.name, layer.id)
        return layer

    def select_layer(self, layer_id):
        stack = self.stack
        if stack is not None and stack.find(layer_id) is not None:
            stack.selected_layer_id = layer_id

    def remove_selected_layer(self):
        """删除选中图层，选中同位置的下一个图层（删除顶层时选中前一个）"""
        image, stack = self.image, self.stack
        if stack is None:
            return
        index = stack.index_of(stack.selected_layer_id)
        if index == -1:
            return
        before = image.snapshot()
        del stack.layers[index]
        if stack.layers:
            stack.selected_layer_id = stack.layers[min(index, len(stack.layers) - 1)].id
        else:
            stack.selected_layer_id = None
        self._commit(image, before)

    def move_layer(self, from_index, to_index):
        image, stack = self.image, self.stack
        if stack is None or from_index == to_index:
            return
        if not (0 <= from_index < len(stack.layers) and 0 <= to_index < len(stack.layers)):
            raise IndexError("图层索引超出范围")
        before = image.snapshot()
        layer = stack.layers.pop(from_index)
        stack.layers.insert(to_index, layer)
        self._commit(image, before)

    def toggle_visibility(self, layer_id):
        image, stack = self.image, self.stack
        layer = stack.find(layer_id) if stack else None
        if layer is None:
            return
        before = image.snapshot()
        layer.visible = not layer.visible
        self._commit(image, before)

    def update_selected_layer(self, changes=None, commit=False, image_config=None, text_config=None):
        """
        修改选中图层的字段

        参数:
            changes: WatermarkLayer 字段 -> 新值
            commit: True 时写入撤销历史（控件 change 事件），False 用于连续拖动
            image_config / text_config: 对应配置的字段修改
        """
        image, layer = self.image, self.selected_layer()
        if layer is None:
            return None
        before = image.snapshot() if commit else None
        if changes:
            _set_fields(layer, changes)
        if image_config and layer.image_config is not None:
            _set_fields(layer.image_config, image_config)
        if text_config and layer.text_config is not None:
            _set_fields(layer.text_config, text_config)
        if commit:
            self._commit(image, before)
        return layer

    def set_opacity(self, opacity, commit=False):
        layer = self.selected_layer()
        if layer is None:
            return
        if layer.type == 'image':
            self.update_selected_layer(commit=commit, image_config={'opacity': opacity})
        else:
            self.update_selected_layer(commit=commit, text_config={'opacity': opacity})

    # ---- 手势：一次拖动只产生一条历史 ----

    def begin_gesture(self):
        image = self.image
        self._gesture_before = image.snapshot() if image is not None else None

    def end_gesture(self):
        before, self._gesture_before = self._gesture_before, None
        image = self.image
        if before is None or image is None:
            return
        if image.snapshot() != before:
            self._commit(image, before)

    @property
    def in_gesture(self):
        return self._gesture_before is not None

    # ---- 应用到全部图片 ----

    def apply_all_layers_to_all(self):
        """把整个图层栈复制到其他所有图片，每个目标重新生成图层 id"""
        source, stack = self.image, self.stack
        if stack is None:
            return
        images = self.collection.images
        before_map = {img.id: img.snapshot() for img in images}
        for target in images:
            if target is source:
                continue
            layers = [layer.clone(new_id=True) for layer in stack.layers]
            target.watermark = LayerStack(layers, layers[-1].id if layers else None)
        self.history.commit_all(before_map, images)

    def apply_selected_layer_to_all(self):
        """把选中图层追加到其他图片，已满的图片跳过"""
        source, layer = self.image, self.selected_layer()
        if layer is None:
            return []
        images = self.collection.images
        before_map = {img.id: img.snapshot() for img in images}
        skipped = []
        for target in images:
            if target is source:
                continue
            target_stack = ensure_layer_stack(target)
            if target_stack.is_full:
                skipped.append(target.id)
                continue
            copy = layer.clone(new_id=True)
            target_stack.layers.append(copy)
            target_stack.selected_layer_id = copy.id
        self.history.commit_all(before_map, images)
        if skipped:
            logger.info("layer not applied to %d full image(s)", len(skipped))
        return skipped
