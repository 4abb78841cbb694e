# watermarker/models.py
"""
数据模型

所有会进入撤销历史的对象都通过 clone() 深拷贝，
历史记录与当前状态之间绝不共享可变对象。
"""
from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from typing import Optional, Union

MAX_LAYERS = 10


def generate_id():
    return uuid.uuid4().hex


@dataclass
class CropSettings:
    preset: str = 'original'
    # 百分比 (0~100)，相对于源图自身尺寸
    x: float = 0
    y: float = 0
    width: float = 100
    height: float = 100
    user_modified: bool = False

    def clone(self):
        return copy.deepcopy(self)

    def reset(self, preset):
        self.preset = preset
        self.x, self.y, self.width, self.height = 0, 0, 100, 100
        self.user_modified = False


@dataclass
class ImageWatermarkConfig:
    image_data: bytes
    original_width: int
    original_height: int
    opacity: float = 80


@dataclass
class TextWatermarkConfig:
    text: str = ''
    font_family: str = 'Arial'
    font_size: int = 24
    font_color: str = '#ffffff'
    opacity: float = 80
    bold: bool = False
    italic: bool = False


@dataclass
class WatermarkLayer:
    id: str
    name: str
    type: str  # 'image' | 'text'
    visible: bool = True
    locked: bool = False
    anchor: str = 'bottom-right'
    custom_x: float = 80
    custom_y: float = 80
    scale: float = 20
    rotation: float = 0
    image_config: Optional[ImageWatermarkConfig] = None
    text_config: Optional[TextWatermarkConfig] = None

    @property
    def opacity(self):
        config = self.image_config if self.type == 'image' else self.text_config
        return config.opacity if config else 80

    def clone(self, new_id=False):
        layer = copy.deepcopy(self)
        if new_id:
            layer.id = generate_id()
        return layer


@dataclass
class LayerStack:
    layers: list = field(default_factory=list)
    selected_layer_id: Optional[str] = None

    def clone(self, new_ids=False):
        stack = LayerStack([layer.clone(new_id=new_ids) for layer in self.layers])
        if new_ids:
            # 重新生成 id 后保持选中同一位置的图层
            ids = [layer.id for layer in self.layers]
            if self.selected_layer_id in ids:
                stack.selected_layer_id = stack.layers[ids.index(self.selected_layer_id)].id
        else:
            stack.selected_layer_id = self.selected_layer_id
        return stack

    def find(self, layer_id):
        for layer in self.layers:
            if layer.id == layer_id:
                return layer
        return None

    def index_of(self, layer_id):
        for i, layer in enumerate(self.layers):
            if layer.id == layer_id:
                return i
        return -1

    @property
    def selected(self):
        if self.selected_layer_id is None:
            return None
        return self.find(self.selected_layer_id)

    @property
    def is_full(self):
        return len(self.layers) >= MAX_LAYERS


@dataclass
class LegacyWatermark:
    """旧版单水印描述：一个图片或文字水印，不支持旋转"""
    type: str = 'image'
    anchor: str = 'bottom-right'
    custom_x: float = 80
    custom_y: float = 80
    scale: float = 20
    image_config: Optional[ImageWatermarkConfig] = None
    text_config: Optional[TextWatermarkConfig] = field(default_factory=TextWatermarkConfig)

    def clone(self, new_ids=False):
        return copy.deepcopy(self)


Watermark = Union[LayerStack, LegacyWatermark]


@dataclass
class ImageState:
    """一张图片可撤销的状态快照：水印/图层 + 裁剪"""
    watermark: Watermark
    crop: CropSettings

    def clone(self):
        return ImageState(self.watermark.clone(), self.crop.clone())


@dataclass
class DefaultWatermarkTemplate:
    """新导入图片时复制的默认水印设置"""
    watermark: Watermark = field(default_factory=LayerStack)
    crop: CropSettings = field(default_factory=CropSettings)

    def instantiate(self):
        return self.watermark.clone(new_ids=True), self.crop.clone()


@dataclass
class ImageItem:
    id: str
    file_name: str
    file_path: str
    width: int
    height: int
    original_data: bytes
    watermark: Watermark = field(default_factory=LayerStack)
    crop: CropSettings = field(default_factory=CropSettings)
    processed: bool = False
    processing: bool = False
    error: Optional[str] = None

    def snapshot(self):
        return ImageState(self.watermark.clone(), self.crop.clone())

    def restore(self, state):
        self.watermark = state.watermark.clone()
        self.crop = state.crop.clone()


@dataclass
class ExportSettings:
    format: str = 'png'  # 'png' | 'jpg' | 'webp'
    quality: int = 85
    scale: float = 100
    output_folder: str = ''
