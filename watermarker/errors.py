# watermarker/errors.py


class WatermarkerError(Exception):
    """所有水印相关错误的基类"""


class LayerCapacityError(WatermarkerError):
    """图层数量超过上限时抛出，不会创建任何图层"""

    def __init__(self, limit):
        super().__init__(f"每张图片最多允许 {limit} 个图层")
        self.limit = limit


class ImageDecodeError(WatermarkerError):
    """源图或水印图无法解码"""


class ExportWriteError(WatermarkerError):
    """合成成功但写入文件失败"""

    def __init__(self, message, permission=False):
        super().__init__(message)
        self.permission = permission
