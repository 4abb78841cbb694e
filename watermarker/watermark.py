# watermarker/watermark.py
from functools import lru_cache

from PIL import Image, ImageColor, ImageDraw, ImageFont

# 基线位于文字框高度的 80%
BASELINE_RATIO = 0.8
ITALIC_SHEAR = 0.3
FALLBACK_FONTS = ('DejaVuSans.ttf', 'arial.ttf', 'Arial.ttf')


@lru_cache(maxsize=64)
def resolve_font(font_family, font_size):
    """
    按字体名查找 TrueType 字体，找不到时回退到 Pillow 内置字体

    font_family 可以是字体名（Arial）也可以是 .ttf/.otf 文件路径
    """
    font_size = max(1, int(font_size))
    candidates = [font_family]
    if not font_family.lower().endswith(('.ttf', '.otf', '.ttc')):
        compact = font_family.replace(' ', '')
        candidates += [f"{font_family}.ttf", f"{compact}.ttf", f"{compact.lower()}.ttf"]
    candidates += list(FALLBACK_FONTS)
    for name in candidates:
        try:
            return ImageFont.truetype(name, font_size)
        except OSError:
            continue
    return ImageFont.load_default(size=font_size)


def parse_color(color):
    """'#rrggbb' 或颜色名 -> (r, g, b)"""
    return ImageColor.getrgb(color)[:3]


def measure_text(config, font_size):
    """文字水印的框尺寸：宽为字形前进宽度，高取字号"""
    if not config.text or font_size <= 0:
        return 0, 0
    font = resolve_font(config.font_family, font_size)
    width = font.getlength(config.text)
    if config.bold:
        width += 2
    return width, font_size


def create_text_watermark_image(config, font_size, size=None):
    """
    返回一个透明背景的 RGBA Image，包含绘制好的文字

    参数:
        config: TextWatermarkConfig
        font_size: 像素字号（由图层 scale 与画布宽度算出）
        size: (w, h) 输出尺寸，默认使用 measure_text 的结果

    不透明度在合成时统一处理，这里文字按完全不透明绘制。
    """
    if size is None:
        size = measure_text(config, font_size)
    w = max(1, int(round(size[0])))
    h = max(1, int(round(size[1])))

    font = resolve_font(config.font_family, font_size)
    fill = (*parse_color(config.font_color), 255)
    x, y = (1 if config.bold else 0), h * BASELINE_RATIO

    canvas = Image.new("RGBA", (w, h), (0, 0, 0, 0))
    draw = ImageDraw.Draw(canvas)
    if config.bold:
        # 模拟粗体：在 3x3 邻域内重复绘制
        for dx in range(-1, 2):
            for dy in range(-1, 2):
                draw.text((x + dx, y + dy), config.text, font=font, fill=fill, anchor='ls')
    else:
        draw.text((x, y), config.text, font=font, fill=fill, anchor='ls')

    if config.italic:
        # 模拟斜体：错切后缩放回原尺寸
        canvas = canvas.transform(
            (int(w + h * ITALIC_SHEAR), h),
            Image.AFFINE,
            (1, ITALIC_SHEAR, 0, 0, 1, 0),
            Image.BICUBIC,
        )
        canvas = canvas.resize((w, h), Image.BICUBIC)

    return canvas  # RGBA image
