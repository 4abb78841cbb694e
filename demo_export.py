# demo_export.py
"""
无界面批量导出示例：给一个文件夹里的所有图片加右下角文字水印
"""
import logging
import sys
from pathlib import Path

from watermarker.batch_worker import BatchExporter
from watermarker.collection import ImageCollection
from watermarker.image_io import is_image_file
from watermarker.layers import LayerModel
from watermarker.models import ExportSettings

logger = logging.getLogger(__name__)


def demo(src_dir, out_dir, text="© 2025 MyBrand", output_format='jpg', isolation='process'):
    """
    参数:
        src_dir: 源图片文件夹
        out_dir: 输出文件夹（不存在时自动创建）
        text: 水印文字

    返回:
        BatchSummary
    """
    collection = ImageCollection()
    paths = sorted(str(p) for p in Path(src_dir).iterdir() if is_image_file(str(p)))
    _, errors = collection.add_paths(paths)
    for path, error in errors.items():
        logger.warning("跳过 %s: %s", path, error)
    if not collection.images:
        logger.warning("%s 中没有可导入的图片", src_dir)

    # 在第一张图片上建好文字图层，再复制到全部图片
    layers = LayerModel(collection)
    if collection.images:
        layers.add_layer('text')
        layers.update_selected_layer({'anchor': 'bottom-right', 'scale': 30}, text_config={'text': text})
        layers.apply_all_layers_to_all()

    Path(out_dir).mkdir(parents=True, exist_ok=True)
    settings = ExportSettings(format=output_format, quality=90, output_folder=str(out_dir))
    exporter = BatchExporter(
        settings, progress_callback=lambda e: logger.info("[%d%%] %s", e.percent, e.text), isolation=isolation
    )
    summary = exporter.export_images(collection.images)
    logger.info(summary.message(out_dir))
    return summary


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    if len(sys.argv) < 3:
        print("用法: python demo_export.py <源文件夹> <输出文件夹> [水印文字]")
        sys.exit(1)
    demo(*sys.argv[1:4])
