# watermarker/collection.py
import logging
from pathlib import Path

from watermarker.errors import ImageDecodeError
from watermarker.history import HistoryManager
from watermarker.image_io import read_image_file
from watermarker.models import DefaultWatermarkTemplate, ImageItem, generate_id
from watermarker.geometry import CROP_PRESETS

logger = logging.getLogger(__name__)


class ImageCollection:
    """
    图片集合

    独占所有 ImageItem，维护当前选中图片，并持有撤销历史。
    新导入的图片从 DefaultWatermarkTemplate 复制水印与裁剪设置。
    """

    def __init__(self, template=None):
        self.images = []
        self.selected_image_id = None
        self.template = template or DefaultWatermarkTemplate()
        self.history = HistoryManager(self.get)

    def __len__(self):
        return len(self.images)

    def __iter__(self):
        return iter(self.images)

    def get(self, image_id):
        for image in self.images:
            if image.id == image_id:
                return image
        return None

    @property
    def selected_image(self):
        return self.get(self.selected_image_id)

    def select(self, image_id):
        if self.get(image_id) is not None:
            self.selected_image_id = image_id

    def add_image(self, file_path, data, width, height):
        """根据已解码的尺寸和原始字节创建图片，首张图片自动选中"""
        watermark, crop = self.template.instantiate()
        image = ImageItem(
            id=generate_id(),
            file_name=Path(file_path).name,
            file_path=str(file_path),
            width=width,
            height=height,
            original_data=bytes(data),
            watermark=watermark,
            crop=crop,
        )
        self.images.append(image)
        if self.selected_image_id is None:
            self.selected_image_id = image.id
        logger.debug("image added: %s (%dx%d)", image.file_name, width, height)
        return image

    def add_path(self, path):
        data, width, height = read_image_file(path)
        return self.add_image(path, data, width, height)

    def add_paths(self, paths):
        """
        批量导入，跳过重复路径；解码失败的文件返回在 errors 中

        返回:
            (added, errors): 新增的 ImageItem 列表，{路径: 错误信息}
        """
        known = {img.file_path for img in self.images}
        added, errors = [], {}
        for p in paths:
            p = str(p)
            if p in known:
                continue
            try:
                added.append(self.add_path(p))
                known.add(p)
            except (OSError, ImageDecodeError) as e:
                errors[p] = str(e)
                logger.warning("failed to import %s: %s", p, e)
        return added, errors

    def remove(self, image_id):
        """删除图片；历史中引用它的记录在撤销时会被忽略"""
        index = next((i for i, img in enumerate(self.images) if img.id == image_id), -1)
        if index == -1:
            return
        del self.images[index]
        if self.selected_image_id == image_id:
            if self.images:
                self.selected_image_id = self.images[min(index, len(self.images) - 1)].id
            else:
                self.selected_image_id = None

    def clear(self):
        self.images.clear()
        self.selected_image_id = None
        self.history.clear()

    # ---- 裁剪 ----

    def set_crop_preset(self, preset):
        image = self.selected_image
        if image is None:
            return
        if preset not in CROP_PRESETS:
            raise ValueError(f"未知的裁剪预设: {preset}")
        before = image.snapshot()
        image.crop.reset(preset)
        self.history.commit_single(image, before)

    def set_crop_rect(self, x, y, width, height, commit=True):
        """以百分比设置裁剪框；拖动过程中 commit=False 不记录历史"""
        image = self.selected_image
        if image is None:
            return
        before = image.snapshot()
        image.crop.x, image.crop.y = x, y
        image.crop.width, image.crop.height = width, height
        image.crop.user_modified = True
        if commit:
            self.history.commit_single(image, before)
