# watermarker/template_manager.py
import base64
import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path

from watermarker.models import (
    CropSettings, DefaultWatermarkTemplate, ImageWatermarkConfig, LayerStack,
    LegacyWatermark, TextWatermarkConfig, WatermarkLayer,
)

logger = logging.getLogger(__name__)

SETTINGS_FILE = Path.home() / '.watermarker' / 'settings.json'
DEFAULT_TEMPLATE_NAME = "默认模板"


@dataclass
class AppSettings:
    default_anchor: str = 'bottom-right'
    default_export_format: str = 'jpg'
    default_export_quality: int = 85
    default_export_scale: int = 100
    default_zoom: int = 100
    zoom_step: int = 25
    export_timeout: float = 120
    isolation: str = 'process'
    preview_cache_size: int = 8

    @classmethod
    def from_dict(cls, data):
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


# ---- 序列化 ----

def _image_config_to_dict(config):
    if config is None:
        return None
    data = asdict(config)
    data['image_data'] = base64.b64encode(config.image_data).decode('ascii')
    return data


def _image_config_from_dict(data):
    if not data:
        return None
    data = dict(data)
    data['image_data'] = base64.b64decode(data['image_data'])
    return ImageWatermarkConfig(**data)


def _text_config_from_dict(data):
    return TextWatermarkConfig(**data) if data else None


def watermark_to_dict(watermark):
    if isinstance(watermark, LayerStack):
        layers = []
        for layer in watermark.layers:
            item = asdict(layer)
            item['image_config'] = _image_config_to_dict(layer.image_config)
            layers.append(item)
        return {'kind': 'layers', 'layers': layers, 'selected_layer_id': watermark.selected_layer_id}
    item = asdict(watermark)
    item['image_config'] = _image_config_to_dict(watermark.image_config)
    item['kind'] = 'legacy'
    return item


def watermark_from_dict(data):
    data = dict(data)
    kind = data.pop('kind', 'layers')
    if kind == 'legacy':
        data['image_config'] = _image_config_from_dict(data.get('image_config'))
        data['text_config'] = _text_config_from_dict(data.get('text_config'))
        return LegacyWatermark(**data)
    layers = []
    for item in data.get('layers', []):
        item = dict(item)
        item['image_config'] = _image_config_from_dict(item.get('image_config'))
        item['text_config'] = _text_config_from_dict(item.get('text_config'))
        layers.append(WatermarkLayer(**item))
    return LayerStack(layers, data.get('selected_layer_id'))


def template_to_dict(template):
    return {'watermark': watermark_to_dict(template.watermark), 'crop': asdict(template.crop)}


def template_from_dict(data):
    return DefaultWatermarkTemplate(
        watermark=watermark_from_dict(data.get('watermark', {})),
        crop=CropSettings(**data.get('crop', {})),
    )


class TemplateManager:
    """
    配置与水印模板

    所有内容保存在一个 JSON 文件中：应用设置、命名模板、上次使用的模板。
    """

    def __init__(self, path=None):
        self.path = Path(path) if path else SETTINGS_FILE
        self.settings = AppSettings()
        self.templates = {}
        self.last_used = None
        self.load_templates()

    def load_templates(self):
        """加载配置文件，不存在时写入默认配置"""
        if os.path.exists(self.path):
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            self.settings = AppSettings.from_dict(data.get("settings", {}))
            self.templates = {
                name: template_from_dict(item) for name, item in data.get("templates", {}).items()
            }
            self.last_used = data.get("last_used")
        if DEFAULT_TEMPLATE_NAME not in self.templates:
            # 初始化一个默认模板
            self.templates[DEFAULT_TEMPLATE_NAME] = DefaultWatermarkTemplate()
            self.last_used = self.last_used or DEFAULT_TEMPLATE_NAME
            self.save_templates()

    def save_templates(self):
        """保存配置文件"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(
                {
                    "settings": asdict(self.settings),
                    "templates": {name: template_to_dict(t) for name, t in self.templates.items()},
                    "last_used": self.last_used,
                },
                f, indent=4, ensure_ascii=False
            )

    def update_settings(self, **changes):
        for key, value in changes.items():
            if not hasattr(self.settings, key):
                raise AttributeError(f"未知的设置项: {key}")
            setattr(self.settings, key, value)
        self.save_templates()

    def save_template(self, name, template):
        """保存当前设置为模板（保存副本）"""
        self.templates[name] = DefaultWatermarkTemplate(template.watermark.clone(), template.crop.clone())
        self.last_used = name
        self.save_templates()

    def load_template(self, name):
        """加载指定模板，返回副本"""
        if name in self.templates:
            self.last_used = name
            self.save_templates()
            template = self.templates[name]
            return DefaultWatermarkTemplate(template.watermark.clone(), template.crop.clone())
        return None

    def delete_template(self, name):
        """删除模板，默认模板不能删除"""
        if name == DEFAULT_TEMPLATE_NAME:
            raise ValueError("不能删除默认模板")
        if name in self.templates:
            del self.templates[name]
            # 如果删的是当前模板，回退到默认
            if self.last_used == name:
                self.last_used = DEFAULT_TEMPLATE_NAME
            self.save_templates()
