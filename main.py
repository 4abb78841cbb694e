# -*- coding: utf-8 -*-
"""
图片水印工具主程序
功能:批量为图片添加多图层水印(图片/文字),支持裁剪、撤销重做、模板管理与批量导出
"""

# 标准库导入
import logging
import os
import sys
from pathlib import Path

# 第三方库导入
from PIL.ImageQt import ImageQt
from PySide6.QtWidgets import (
    QApplication, QWidget, QPushButton, QLabel, QListWidget, QListWidgetItem,
    QHBoxLayout, QVBoxLayout, QFileDialog, QGraphicsView, QGraphicsScene,
    QGraphicsPixmapItem, QSlider, QLineEdit, QComboBox, QMessageBox, QSpinBox,
    QFontComboBox, QColorDialog, QCheckBox, QInputDialog, QGroupBox, QFrame,
    QScrollArea, QSplitter, QProgressBar,
)
from PySide6.QtGui import QPixmap, QImage, Qt, QColor, QPen, QPolygonF, QKeySequence, QShortcut
from PySide6.QtCore import QSize, QPointF, QRectF, Signal, QThread

# 本地模块导入
from watermarker.batch_worker import BatchExporter
from watermarker.collection import ImageCollection
from watermarker.errors import ImageDecodeError, LayerCapacityError
from watermarker.geometry import ANCHORS, CROP_PRESETS
from watermarker.image_io import generate_thumbnail, is_image_file, load_watermark_config
from watermarker.layers import LayerModel
from watermarker.models import DefaultWatermarkTemplate, ExportSettings
from watermarker.preview import (
    CropGestureController, LayerGestureController, MAX_LAYER_SCALE, MIN_LAYER_SCALE,
    WatermarkBitmapCache, clamp_zoom, crop_handle_at, hit_test, layer_display_bounds,
    layer_handle_at, layer_handle_points, layout_for_image, render_preview, rotated_corners,
)
from watermarker.template_manager import DEFAULT_TEMPLATE_NAME, TemplateManager

logger = logging.getLogger(__name__)

# 全局常量
APP_NAME = "WatermarkerPy - 图片水印工具"
PREVIEW_SOURCE_SIZE = 1600  # 预览用源图的最大边长

ANCHOR_LABELS = {
    'top-left': "左上", 'top-right': "右上", 'center': "中心",
    'bottom-left': "左下", 'bottom-right': "右下", 'custom': "自定义",
}
PRESET_LABELS = {
    'original': "原图", 'freeform': "自由裁剪", '1:1': "1:1", '4:3': "4:3",
    '3:2': "3:2", '16:9': "16:9", '9:16': "9:16", '4:5': "4:5",
    'instagram-square': "Instagram 方图", 'instagram-portrait': "Instagram 竖图",
    'facebook-cover': "Facebook 封面", 'twitter-header': "Twitter 头图",
    'youtube-thumb': "YouTube 缩略图", 'facebook-thumb': "Facebook 分享图",
}


def pil_to_qpixmap(img):
    """
    将PIL图像转换为Qt的QPixmap对象

    参数:
        img: PIL.Image对象

    返回:
        QPixmap: 转换后的QPixmap对象
    """
    if img.mode != "RGBA":
        img = img.convert("RGBA")
    qim = ImageQt(img)
    pix = QPixmap.fromImage(QImage(qim))
    return pix


class ExportWorker(QThread):
    """
    导出工作线程类

    在后台驱动 BatchExporter,避免阻塞UI线程

    信号:
        progress: 发送处理进度信息 (百分比, 总数量, 消息)
        finished_signal: 任务完成时发送 BatchSummary
    """
    progress = Signal(int, int, str)  # 百分比, 总数量, 消息
    finished_signal = Signal(object)

    def __init__(self, jobs, settings, isolation='process', timeout=None):
        """
        参数:
            jobs: ExportJob 列表,在UI线程中构建(输入的独立副本)
            settings: ExportSettings
        """
        super().__init__()
        self.jobs = jobs
        self.exporter = BatchExporter(
            settings, progress_callback=self.on_progress, isolation=isolation, timeout=timeout
        )

    def on_progress(self, event):
        self.progress.emit(int(event.percent), event.total, event.text)

    def cancel(self):
        self.exporter.cancel()

    def run(self):
        """执行导出任务的主方法"""
        summary = self.exporter.run(self.jobs)
        self.finished_signal.emit(summary)


class PreviewView(QGraphicsView):
    """
    预览视图

    把鼠标事件换算为场景坐标交给主窗口处理,尺寸变化时重新渲染
    """

    def __init__(self, main_window):
        super().__init__()
        self.main_window = main_window
        self.setScene(QGraphicsScene(self))
        self.setMouseTracking(True)

    def _scene_pos(self, event):
        pos = self.mapToScene(event.position().toPoint())
        return pos.x(), pos.y()

    def mousePressEvent(self, event):
        if event.button() == Qt.LeftButton and self.main_window.on_preview_press(*self._scene_pos(event)):
            event.accept()
            return
        super().mousePressEvent(event)

    def mouseMoveEvent(self, event):
        self.main_window.on_preview_move(*self._scene_pos(event))
        super().mouseMoveEvent(event)

    def mouseReleaseEvent(self, event):
        if event.button() == Qt.LeftButton:
            self.main_window.on_preview_release()
        super().mouseReleaseEvent(event)

    def resizeEvent(self, event):
        super().resizeEvent(event)
        self.main_window.refresh_preview()


class MainWindow(QWidget):
    """
    图片水印工具主窗口类

    左侧为图片列表,中间为预览区(可直接拖动/缩放/旋转图层、调整裁剪框),
    右侧为模板、图层、图层属性和导出设置
    """
    def __init__(self, template_manager=None):
        super().__init__()
        self.setWindowTitle(APP_NAME)
        self.resize(1400, 860)
        self.template_manager = template_manager or TemplateManager()
        self.settings = self.template_manager.settings

        # 设置应用样式
        self.setup_styles()

        # 数据模型
        template = self.template_manager.load_template(self.template_manager.last_used)
        self.collection = ImageCollection(template)
        self.layer_model = LayerModel(self.collection)
        self.bitmap_cache = WatermarkBitmapCache(self.settings.preview_cache_size)
        self.layer_gestures = LayerGestureController(self.layer_model, self.current_layout)
        self.crop_gestures = CropGestureController(self.collection, self.current_layout)
        self.preview_sources = {}  # image_id -> 预览用源图
        self.zoom = clamp_zoom(self.settings.default_zoom)
        self.thumb_size = 120
        self.output_dir = None
        self.worker = None
        self._syncing = False

        # 创建主布局
        self.setup_ui()
        self.setup_shortcuts()
        self.collection.history.add_listener(self.on_history_changed)
        self.on_history_changed(False, False)

        # enable drag & drop for window
        self.setAcceptDrops(True)
        self.sync_layer_panel()

    def setup_styles(self):
        """设置应用程序的全局样式"""
        style = """
            QWidget {
                font-family: "Microsoft YaHei UI", "Segoe UI", Arial;
                font-size: 9pt;
            }

            QGroupBox {
                font-weight: bold;
                border: 2px solid #d0d0d0;
                border-radius: 6px;
                margin-top: 12px;
                padding-top: 8px;
                background-color: #fafafa;
            }

            QGroupBox::title {
                subcontrol-origin: margin;
                subcontrol-position: top left;
                padding: 4px 10px;
                background-color: white;
                border-radius: 4px;
                color: #2c3e50;
            }

            QPushButton {
                background-color: #3498db;
                color: white;
                border: none;
                border-radius: 4px;
                padding: 6px 12px;
                font-weight: bold;
            }

            QPushButton:hover { background-color: #2980b9; }
            QPushButton:pressed { background-color: #21618c; }
            QPushButton:disabled { background-color: #bdc3c7; }
            QPushButton#secondaryButton { background-color: #95a5a6; }
            QPushButton#secondaryButton:hover { background-color: #7f8c8d; }
            QPushButton#dangerButton { background-color: #e74c3c; }
            QPushButton#dangerButton:hover { background-color: #c0392b; }
            QPushButton#successButton { background-color: #27ae60; }
            QPushButton#successButton:hover { background-color: #229954; }

            QLineEdit, QSpinBox, QComboBox {
                border: 1px solid #bdc3c7;
                border-radius: 4px;
                padding: 4px;
                background-color: white;
            }

            QLineEdit:focus, QSpinBox:focus, QComboBox:focus {
                border: 2px solid #3498db;
            }

            QSlider::groove:horizontal {
                border: 1px solid #bdc3c7;
                height: 6px;
                background: #ecf0f1;
                border-radius: 3px;
            }

            QSlider::handle:horizontal {
                background: #3498db;
                border: 1px solid #2980b9;
                width: 16px;
                height: 16px;
                margin: -6px 0;
                border-radius: 8px;
            }

            QListWidget {
                border: 1px solid #bdc3c7;
                border-radius: 6px;
                background-color: white;
                padding: 4px;
            }

            QListWidget::item:selected {
                background-color: #3498db;
                color: white;
            }

            QLabel { color: #2c3e50; }

            QGraphicsView {
                border: 2px solid #bdc3c7;
                border-radius: 6px;
                background-color: #ecf0f1;
            }
        """
        self.setStyleSheet(style)

    def setup_ui(self):
        """设置用户界面布局"""
        main_splitter = QSplitter(Qt.Horizontal)
        main_splitter.addWidget(self.create_left_panel())
        main_splitter.addWidget(self.create_center_panel())
        main_splitter.addWidget(self.create_right_panel())

        # 设置分割比例
        main_splitter.setStretchFactor(0, 2)
        main_splitter.setStretchFactor(1, 5)
        main_splitter.setStretchFactor(2, 3)

        main_layout = QVBoxLayout(self)
        main_layout.addWidget(main_splitter)
        main_layout.setContentsMargins(10, 10, 10, 10)

    def setup_shortcuts(self):
        QShortcut(QKeySequence.Undo, self, activated=self.on_undo)
        QShortcut(QKeySequence.Redo, self, activated=self.on_redo)
        QShortcut(QKeySequence.ZoomIn, self, activated=lambda: self.set_zoom(self.zoom + self.settings.zoom_step))
        QShortcut(QKeySequence.ZoomOut, self, activated=lambda: self.set_zoom(self.zoom - self.settings.zoom_step))
        QShortcut(QKeySequence(Qt.CTRL | Qt.Key_0), self, activated=lambda: self.set_zoom(100))

    # ---- 面板 ----

    def create_left_panel(self):
        """创建左侧图片列表面板"""
        panel = QWidget()
        layout = QVBoxLayout(panel)
        layout.setSpacing(10)

        title = QLabel("📁 图片列表")
        title.setStyleSheet("font-size: 12pt; font-weight: bold; color: #2c3e50;")
        layout.addWidget(title)

        import_btn = QPushButton("➕ 导入图片/文件夹")
        import_btn.setObjectName("successButton")
        import_btn.setMinimumHeight(40)
        import_btn.clicked.connect(self.on_import)
        layout.addWidget(import_btn)

        self.list_widget = QListWidget()
        self.list_widget.setIconSize(QSize(self.thumb_size, self.thumb_size))
        self.list_widget.currentItemChanged.connect(self.on_thumb_changed)
        layout.addWidget(self.list_widget)

        btn_layout = QHBoxLayout()
        remove_btn = QPushButton("🗑️ 移除")
        remove_btn.setObjectName("dangerButton")
        remove_btn.clicked.connect(self.on_remove_image)
        btn_layout.addWidget(remove_btn)
        clear_btn = QPushButton("清空")
        clear_btn.setObjectName("secondaryButton")
        clear_btn.clicked.connect(self.on_clear_images)
        btn_layout.addWidget(clear_btn)
        layout.addLayout(btn_layout)

        return panel

    def create_center_panel(self):
        """创建中央预览面板"""
        panel = QWidget()
        layout = QVBoxLayout(panel)
        layout.setSpacing(10)

        header = QHBoxLayout()
        title = QLabel("🖼️ 预览区域")
        title.setStyleSheet("font-size: 12pt; font-weight: bold; color: #2c3e50;")
        header.addWidget(title)
        header.addStretch()

        self.undo_btn = QPushButton("↶ 撤销")
        self.undo_btn.setObjectName("secondaryButton")
        self.undo_btn.clicked.connect(self.on_undo)
        header.addWidget(self.undo_btn)
        self.redo_btn = QPushButton("↷ 重做")
        self.redo_btn.setObjectName("secondaryButton")
        self.redo_btn.clicked.connect(self.on_redo)
        header.addWidget(self.redo_btn)

        zoom_out_btn = QPushButton("－")
        zoom_out_btn.clicked.connect(lambda: self.set_zoom(self.zoom - self.settings.zoom_step))
        header.addWidget(zoom_out_btn)
        self.zoom_label = QLabel(f"{self.zoom}%")
        header.addWidget(self.zoom_label)
        zoom_in_btn = QPushButton("＋")
        zoom_in_btn.clicked.connect(lambda: self.set_zoom(self.zoom + self.settings.zoom_step))
        header.addWidget(zoom_in_btn)
        fit_btn = QPushButton("适应")
        fit_btn.setObjectName("secondaryButton")
        fit_btn.clicked.connect(lambda: self.set_zoom(100))
        header.addWidget(fit_btn)
        layout.addLayout(header)

        self.view = PreviewView(self)
        self.scene = self.view.scene()
        layout.addWidget(self.view)

        hint = QLabel("💡 提示: 拖拽文件到窗口可直接导入 | 在预览区拖动图层,右下角手柄缩放,上方手柄旋转")
        hint.setStyleSheet("color: #7f8c8d; font-size: 8pt; padding: 5px;")
        hint.setAlignment(Qt.AlignCenter)
        layout.addWidget(hint)

        layout.addWidget(self.create_crop_group())
        return panel

    def create_right_panel(self):
        """创建右侧控制面板"""
        panel = QWidget()
        scroll = QScrollArea()
        scroll.setWidget(panel)
        scroll.setWidgetResizable(True)
        scroll.setFrameShape(QFrame.NoFrame)

        layout = QVBoxLayout(panel)
        layout.setSpacing(15)
        layout.addWidget(self.create_template_group())
        layout.addWidget(self.create_layers_group())
        layout.addWidget(self.create_layer_settings_group())
        layout.addWidget(self.create_export_group())
        layout.addStretch()
        return scroll

    def create_crop_group(self):
        """创建裁剪设置组"""
        group = QGroupBox("✂️ 裁剪")
        layout = QHBoxLayout()

        layout.addWidget(QLabel("预设:"))
        self.crop_combo = QComboBox()
        for preset in CROP_PRESETS:
            self.crop_combo.addItem(PRESET_LABELS.get(preset, preset), preset)
        self.crop_combo.activated.connect(self.on_crop_preset_changed)
        layout.addWidget(self.crop_combo)

        self.crop_edit_cb = QCheckBox("编辑裁剪框")
        self.crop_edit_cb.stateChanged.connect(lambda _: self.refresh_preview())
        layout.addWidget(self.crop_edit_cb)

        reset_btn = QPushButton("重置")
        reset_btn.setObjectName("secondaryButton")
        reset_btn.clicked.connect(self.on_crop_reset)
        layout.addWidget(reset_btn)
        layout.addStretch()

        group.setLayout(layout)
        return group

    def create_template_group(self):
        """创建模板管理组"""
        group = QGroupBox("💾 水印模板")
        layout = QVBoxLayout()
        layout.setSpacing(8)

        self.template_combo = QComboBox()
        self.template_combo.addItems(self.template_manager.templates.keys())
        self.template_combo.setCurrentText(self.template_manager.last_used)
        layout.addWidget(self.template_combo)

        btn_layout = QHBoxLayout()
        self.btn_load_template = QPushButton("📂 加载")
        self.btn_load_template.setObjectName("secondaryButton")
        self.btn_load_template.clicked.connect(self.load_selected_template)
        btn_layout.addWidget(self.btn_load_template)

        self.btn_save_template = QPushButton("💾 保存")
        self.btn_save_template.clicked.connect(self.save_current_as_template)
        btn_layout.addWidget(self.btn_save_template)

        self.btn_delete_template = QPushButton("🗑️ 删除")
        self.btn_delete_template.setObjectName("dangerButton")
        self.btn_delete_template.clicked.connect(self.delete_selected_template)
        btn_layout.addWidget(self.btn_delete_template)

        layout.addLayout(btn_layout)
        group.setLayout(layout)
        return group

    def create_layers_group(self):
        """创建图层列表组"""
        group = QGroupBox("🗂️ 图层")
        layout = QVBoxLayout()
        layout.setSpacing(8)

        add_layout = QHBoxLayout()
        add_text_btn = QPushButton("➕ 文字")
        add_text_btn.clicked.connect(self.on_add_text_layer)
        add_layout.addWidget(add_text_btn)
        add_image_btn = QPushButton("➕ 图片")
        add_image_btn.clicked.connect(self.on_add_image_layer)
        add_layout.addWidget(add_image_btn)
        layout.addLayout(add_layout)

        # 顶层显示在最上面，勾选框控制可见性
        self.layer_list = QListWidget()
        self.layer_list.setMaximumHeight(180)
        self.layer_list.currentRowChanged.connect(self.on_layer_row_changed)
        self.layer_list.itemChanged.connect(self.on_layer_item_changed)
        layout.addWidget(self.layer_list)

        order_layout = QHBoxLayout()
        up_btn = QPushButton("上移")
        up_btn.setObjectName("secondaryButton")
        up_btn.clicked.connect(lambda: self.on_move_layer(1))
        order_layout.addWidget(up_btn)
        down_btn = QPushButton("下移")
        down_btn.setObjectName("secondaryButton")
        down_btn.clicked.connect(lambda: self.on_move_layer(-1))
        order_layout.addWidget(down_btn)
        remove_btn = QPushButton("删除")
        remove_btn.setObjectName("dangerButton")
        remove_btn.clicked.connect(self.on_remove_layer)
        order_layout.addWidget(remove_btn)
        layout.addLayout(order_layout)

        apply_layout = QHBoxLayout()
        apply_layer_btn = QPushButton("选中图层应用到全部")
        apply_layer_btn.setObjectName("secondaryButton")
        apply_layer_btn.clicked.connect(self.on_apply_layer_to_all)
        apply_layout.addWidget(apply_layer_btn)
        apply_all_btn = QPushButton("全部图层应用到全部")
        apply_all_btn.setObjectName("secondaryButton")
        apply_all_btn.clicked.connect(self.on_apply_all_layers_to_all)
        apply_layout.addWidget(apply_all_btn)
        layout.addLayout(apply_layout)

        group.setLayout(layout)
        return group

    def _add_slider(self, layout, label, low, high, field):
        """
        添加一个带标签的滑块

        拖动过程中只更新预览,松开时写入一条撤销记录;键盘修改直接提交
        """
        text = QLabel(f"{label}: {low}")
        layout.addWidget(text)
        slider = QSlider(Qt.Horizontal)
        slider.setRange(low, high)
        slider.valueChanged.connect(lambda v: text.setText(f"{label}: {v}"))
        slider.valueChanged.connect(lambda v: self.on_slider_changed(field, v, slider.isSliderDown()))
        slider.sliderPressed.connect(self.layer_model.begin_gesture)
        slider.sliderReleased.connect(self.on_slider_released)
        layout.addWidget(slider)
        return slider

    def create_layer_settings_group(self):
        """创建图层属性组"""
        group = QGroupBox("🎨 图层属性")
        layout = QVBoxLayout()
        layout.setSpacing(8)

        self.text_input = QLineEdit()
        self.text_input.setPlaceholderText("输入水印文字...")
        self.text_input.textEdited.connect(self.on_text_edited)
        self.text_input.editingFinished.connect(self.on_text_finished)
        layout.addWidget(self.text_input)

        font_layout = QHBoxLayout()
        self.font_combo = QFontComboBox()
        self.font_combo.currentFontChanged.connect(
            lambda font: self.on_text_config_changed('font_family', font.family())
        )
        font_layout.addWidget(self.font_combo)
        self.font_color = QColor(255, 255, 255)
        self.color_btn = QPushButton("选择颜色")
        self.color_btn.clicked.connect(self.choose_color)
        font_layout.addWidget(self.color_btn)
        layout.addLayout(font_layout)

        style_layout = QHBoxLayout()
        self.bold_cb = QCheckBox("粗体")
        self.bold_cb.toggled.connect(lambda v: self.on_text_config_changed('bold', v))
        style_layout.addWidget(self.bold_cb)
        self.italic_cb = QCheckBox("斜体")
        self.italic_cb.toggled.connect(lambda v: self.on_text_config_changed('italic', v))
        style_layout.addWidget(self.italic_cb)
        self.locked_cb = QCheckBox("锁定")
        self.locked_cb.toggled.connect(lambda v: self.on_layer_field_changed('locked', v))
        style_layout.addWidget(self.locked_cb)
        layout.addLayout(style_layout)

        pos_layout = QHBoxLayout()
        pos_layout.addWidget(QLabel("位置:"))
        self.pos_combo = QComboBox()
        for anchor in ANCHORS:
            self.pos_combo.addItem(ANCHOR_LABELS[anchor], anchor)
        self.pos_combo.activated.connect(self.on_anchor_changed)
        pos_layout.addWidget(self.pos_combo)
        layout.addLayout(pos_layout)

        self.scale_slider = self._add_slider(layout, "大小 (%)", MIN_LAYER_SCALE, MAX_LAYER_SCALE, 'scale')
        self.rotate_slider = self._add_slider(layout, "旋转角度", -180, 180, 'rotation')
        self.opacity_slider = self._add_slider(layout, "透明度 (%)", 0, 100, 'opacity')

        self.layer_settings_group = group
        group.setLayout(layout)
        return group

    def create_export_group(self):
        """创建导出设置组"""
        group = QGroupBox("💾 导出设置")
        layout = QVBoxLayout()
        layout.setSpacing(8)

        self.output_dir_btn = QPushButton("📁 选择输出文件夹")
        self.output_dir_btn.setObjectName("secondaryButton")
        self.output_dir_btn.clicked.connect(self.select_output_dir)
        layout.addWidget(self.output_dir_btn)

        self.output_dir_label = QLabel("未选择")
        self.output_dir_label.setStyleSheet("color: #7f8c8d; padding: 5px;")
        self.output_dir_label.setWordWrap(True)
        layout.addWidget(self.output_dir_label)

        format_layout = QHBoxLayout()
        format_layout.addWidget(QLabel("格式:"))
        self.format_combo = QComboBox()
        self.format_combo.addItems(["jpg", "png", "webp"])
        self.format_combo.setCurrentText(self.settings.default_export_format)
        format_layout.addWidget(self.format_combo)

        format_layout.addWidget(QLabel("质量:"))
        self.quality_spin = QSpinBox()
        self.quality_spin.setRange(1, 100)
        self.quality_spin.setValue(self.settings.default_export_quality)
        format_layout.addWidget(self.quality_spin)

        format_layout.addWidget(QLabel("缩放:"))
        self.scale_spin = QSpinBox()
        self.scale_spin.setRange(25, 200)
        self.scale_spin.setSuffix("%")
        self.scale_spin.setValue(self.settings.default_export_scale)
        format_layout.addWidget(self.scale_spin)
        layout.addLayout(format_layout)

        self.progress_bar = QProgressBar()
        self.progress_bar.setRange(0, 100)
        layout.addWidget(self.progress_bar)
        self.progress_label = QLabel("")
        self.progress_label.setStyleSheet("color: #7f8c8d;")
        layout.addWidget(self.progress_label)

        btn_layout = QHBoxLayout()
        self.export_btn = QPushButton("✅ 导出全部图片")
        self.export_btn.setObjectName("successButton")
        self.export_btn.setMinimumHeight(40)
        self.export_btn.clicked.connect(self.on_export)
        btn_layout.addWidget(self.export_btn)

        self.cancel_btn = QPushButton("取消")
        self.cancel_btn.setObjectName("dangerButton")
        self.cancel_btn.setMinimumHeight(40)
        self.cancel_btn.setEnabled(False)
        self.cancel_btn.clicked.connect(self.on_cancel_export)
        btn_layout.addWidget(self.cancel_btn)
        layout.addLayout(btn_layout)

        group.setLayout(layout)
        return group

    # ---- 模板 ----

    def save_current_as_template(self):
        """将当前图片的水印和裁剪保存为模板"""
        image = self.collection.selected_image
        if image is None:
            QMessageBox.warning(self, "提示", "请先选择一张图片")
            return
        name, ok = QInputDialog.getText(self, "保存模板", "请输入模板名称:")
        if not ok or not name:
            return
        self.template_manager.save_template(name, DefaultWatermarkTemplate(image.watermark, image.crop))
        self.refresh_template_combo(name)
        QMessageBox.information(self, "成功", f"模板 '{name}' 已保存")

    def load_selected_template(self):
        """
        加载选中的模板

        新导入的图片使用该模板,当前选中的图片也立即应用(可撤销)
        """
        name = self.template_combo.currentText()
        template = self.template_manager.load_template(name)
        if template is None:
            QMessageBox.warning(self, "错误", f"未找到模板 '{name}'")
            return
        self.collection.template = template
        image = self.collection.selected_image
        if image is not None:
            before = image.snapshot()
            image.watermark, image.crop = template.instantiate()
            self.collection.history.commit_single(image, before)
        self.on_model_changed()

    def delete_selected_template(self):
        """删除选中的水印模板"""
        name = self.template_combo.currentText()
        if name == DEFAULT_TEMPLATE_NAME:
            QMessageBox.warning(self, "提示", "不能删除默认模板")
            return
        self.template_manager.delete_template(name)
        self.refresh_template_combo(self.template_manager.last_used)
        QMessageBox.information(self, "成功", f"模板 '{name}' 已删除")

    def refresh_template_combo(self, current):
        self.template_combo.clear()
        self.template_combo.addItems(self.template_manager.templates.keys())
        self.template_combo.setCurrentText(current)

    # ---- 导入 ----

    def dragEnterEvent(self, event):
        """处理拖动进入事件"""
        if event.mimeData().hasUrls():
            event.acceptProposedAction()

    def dropEvent(self, event):
        """处理文件拖放事件"""
        paths = [u.toLocalFile() for u in event.mimeData().urls()]
        self.add_paths(paths)

    def on_import(self):
        """导入图片按钮点击事件处理"""
        dlg = QFileDialog(self, "选择图片或文件夹")
        dlg.setFileMode(QFileDialog.ExistingFiles)
        dlg.setNameFilters(["Images (*.png *.jpg *.jpeg *.bmp *.tif *.tiff *.webp)"])
        if dlg.exec():
            self.add_paths(dlg.selectedFiles())

    def add_paths(self, paths):
        """添加图片路径(文件夹会递归查找图片)"""
        files = []
        for p in paths:
            p = Path(p)
            if p.is_dir():
                files.extend(str(f) for f in sorted(p.rglob("*")) if is_image_file(str(f)))
            elif p.is_file() and is_image_file(str(p)):
                files.append(str(p))

        added, errors = self.collection.add_paths(files)
        for image in added:
            self.add_thumbnail_item(image)
        if errors:
            details = "\n".join(f"{Path(k).name}: {v}" for k, v in errors.items())
            QMessageBox.warning(self, "导入失败", f"以下文件无法导入:\n{details}")
        if added and self.list_widget.currentRow() < 0:
            self.list_widget.setCurrentRow(0)
        self.on_model_changed()

    def add_thumbnail_item(self, image):
        """添加缩略图到列表控件"""
        thumb = generate_thumbnail(image.original_data, max_size=self.thumb_size)
        item = QListWidgetItem(image.file_name)
        item.setData(Qt.UserRole, image.id)
        item.setIcon(pil_to_qpixmap(thumb))
        self.list_widget.addItem(item)

    def on_thumb_changed(self, item, _previous=None):
        """缩略图切换事件处理"""
        if item is None:
            return
        self.collection.select(item.data(Qt.UserRole))
        self.sync_layer_panel()
        self.refresh_preview()

    def on_remove_image(self):
        image = self.collection.selected_image
        if image is None:
            return
        self.collection.remove(image.id)
        self.preview_sources.pop(image.id, None)
        self.rebuild_image_list()

    def on_clear_images(self):
        self.collection.clear()
        self.preview_sources.clear()
        self.bitmap_cache.clear()
        self.rebuild_image_list()

    def rebuild_image_list(self):
        self.list_widget.blockSignals(True)
        self.list_widget.clear()
        for image in self.collection:
            self.add_thumbnail_item(image)
        for row in range(self.list_widget.count()):
            if self.list_widget.item(row).data(Qt.UserRole) == self.collection.selected_image_id:
                self.list_widget.setCurrentRow(row)
        self.list_widget.blockSignals(False)
        self.on_model_changed()

    # ---- 预览 ----

    def preview_source(self, image):
        if image.id not in self.preview_sources:
            self.preview_sources[image.id] = generate_thumbnail(image.original_data, PREVIEW_SOURCE_SIZE)
        return self.preview_sources[image.id]

    def current_layout(self):
        image = self.collection.selected_image
        if image is None:
            return None
        viewport = self.view.viewport()
        return layout_for_image(image, viewport.width(), viewport.height(), self.zoom)

    def set_zoom(self, level):
        self.zoom = clamp_zoom(level)
        self.zoom_label.setText(f"{self.zoom}%")
        self.refresh_preview()

    def refresh_preview(self):
        """重新渲染预览,并绘制裁剪框与选中图层的手柄"""
        self.scene.clear()
        image = self.collection.selected_image
        if image is None:
            return
        layout = self.current_layout()
        rendered = render_preview(self.preview_source(image), image, layout, self.bitmap_cache)
        self.scene.addItem(QGraphicsPixmapItem(pil_to_qpixmap(rendered)))
        self.scene.setSceneRect(QRectF(0, 0, layout.display_width, layout.display_height))

        crop = layout.crop_rect
        if image.crop.preset != 'original':
            pen = QPen(QColor("#f1c40f") if self.crop_edit_cb.isChecked() else QColor("#ffffff"))
            pen.setStyle(Qt.DashLine)
            pen.setWidth(2)
            self.scene.addRect(QRectF(crop.x, crop.y, crop.width, crop.height), pen)

        selected = self.layer_model.selected_layer()
        if selected is None or self.crop_edit_cb.isChecked():
            return
        for layer, rect in layer_display_bounds(image, layout):
            if layer.id != selected.id:
                continue
            pen = QPen(QColor("#e74c3c") if layer.locked else QColor("#3498db"))
            pen.setWidth(2)
            corners = rotated_corners(rect, layer.rotation)
            self.scene.addPolygon(QPolygonF([QPointF(x, y) for x, y in corners]), pen)
            if not layer.locked:
                for hx, hy in layer_handle_points(rect, layer.rotation).values():
                    self.scene.addEllipse(QRectF(hx - 5, hy - 5, 10, 10), pen, QColor("#ffffff"))

    def on_preview_press(self, x, y):
        """返回 True 表示开始了一个手势"""
        image = self.collection.selected_image
        layout = self.current_layout()
        if image is None or layout is None:
            return False

        if self.crop_edit_cb.isChecked():
            handle = crop_handle_at(layout.crop_rect, x, y)
            return handle is not None and self.crop_gestures.begin(handle, x, y)

        selected = self.layer_model.selected_layer()
        if selected is not None:
            for layer, rect in layer_display_bounds(image, layout):
                if layer.id == selected.id:
                    handle = layer_handle_at(rect, layer.rotation, x, y)
                    if handle == 'resize':
                        return self.layer_gestures.begin_resize(layer.id, x, y)
                    if handle == 'rotate':
                        return self.layer_gestures.begin_rotate(layer.id, x, y)

        layer = hit_test(image, layout, x, y)
        if layer is None:
            return False
        started = self.layer_gestures.begin_drag(layer.id, x, y)
        self.sync_layer_panel()
        return started

    def on_preview_move(self, x, y):
        if self.layer_gestures.active:
            self.layer_gestures.update(x, y)
        elif self.crop_gestures.active:
            self.crop_gestures.update(x, y)
        else:
            return
        self.refresh_preview()

    def on_preview_release(self):
        if self.layer_gestures.active:
            self.layer_gestures.end()
        elif self.crop_gestures.active:
            self.crop_gestures.end()
        else:
            return
        self.on_model_changed()

    # ---- 裁剪 ----

    def on_crop_preset_changed(self, index):
        self.collection.set_crop_preset(self.crop_combo.itemData(index))
        self.on_model_changed()

    def on_crop_reset(self):
        image = self.collection.selected_image
        if image is not None:
            self.collection.set_crop_preset(image.crop.preset)
            self.on_model_changed()

    # ---- 图层 ----

    def on_add_text_layer(self):
        self._add_layer('text')

    def on_add_image_layer(self):
        path, _ = QFileDialog.getOpenFileName(
            self, "选择水印图片", "", "Images (*.png *.jpg *.jpeg *.bmp *.webp)"
        )
        if not path:
            return
        try:
            config = load_watermark_config(path)
        except (OSError, ImageDecodeError) as e:
            QMessageBox.warning(self, "错误", f"无法加载水印图片: {e}")
            return
        self._add_layer('image', image_config=config)

    def _add_layer(self, layer_type, image_config=None):
        if self.collection.selected_image is None:
            QMessageBox.warning(self, "提示", "请先选择一张图片")
            return
        try:
            layer = self.layer_model.add_layer(layer_type, image_config=image_config)
        except LayerCapacityError as e:
            QMessageBox.warning(self, "提示", str(e))
            return
        if layer_type == 'text':
            self.layer_model.update_selected_layer(text_config={'text': "© Watermark"})
        self.on_model_changed()

    def on_remove_layer(self):
        self.layer_model.remove_selected_layer()
        self.on_model_changed()

    def on_move_layer(self, step):
        stack = self.layer_model.stack
        if stack is None:
            return
        index = stack.index_of(stack.selected_layer_id)
        target = index + step
        if index == -1 or not 0 <= target < len(stack.layers):
            return
        self.layer_model.move_layer(index, target)
        self.on_model_changed()

    def on_apply_layer_to_all(self):
        skipped = self.layer_model.apply_selected_layer_to_all()
        if skipped:
            QMessageBox.information(self, "提示", f"{len(skipped)} 张图片的图层已满,已跳过")
        self.on_model_changed()

    def on_apply_all_layers_to_all(self):
        self.layer_model.apply_all_layers_to_all()
        self.on_model_changed()

    def on_layer_row_changed(self, row):
        if self._syncing or row < 0:
            return
        stack = self.layer_model.stack
        if stack is None:
            return
        self.layer_model.select_layer(stack.layers[len(stack.layers) - 1 - row].id)
        self.sync_layer_controls()
        self.refresh_preview()

    def on_layer_item_changed(self, item):
        if self._syncing:
            return
        layer_id = item.data(Qt.UserRole)
        layer = self.layer_model.stack.find(layer_id) if self.layer_model.stack else None
        if layer is not None and layer.visible != (item.checkState() == Qt.Checked):
            self.layer_model.toggle_visibility(layer_id)
            self.refresh_preview()

    def on_layer_field_changed(self, field, value):
        if self._syncing:
            return
        self.layer_model.update_selected_layer({field: value}, commit=True)
        self.refresh_preview()

    def on_text_config_changed(self, field, value):
        if self._syncing:
            return
        self.layer_model.update_selected_layer(commit=True, text_config={field: value})
        self.refresh_preview()

    def on_anchor_changed(self, index):
        self.on_layer_field_changed('anchor', self.pos_combo.itemData(index))

    def on_text_edited(self, text):
        # 一次编辑(直到失焦)只产生一条撤销记录
        if not self.layer_model.in_gesture:
            self.layer_model.begin_gesture()
        self.layer_model.update_selected_layer(text_config={'text': text})
        self.refresh_preview()

    def on_text_finished(self):
        if self.layer_model.in_gesture:
            self.layer_model.end_gesture()
            self.sync_layer_panel()

    def on_slider_changed(self, field, value, dragging):
        if self._syncing:
            return
        commit = not dragging
        if field == 'opacity':
            self.layer_model.set_opacity(value, commit=commit)
        else:
            self.layer_model.update_selected_layer({field: value}, commit=commit)
        self.refresh_preview()

    def on_slider_released(self):
        self.layer_model.end_gesture()

    def choose_color(self):
        """选择字体颜色"""
        color = QColorDialog.getColor(self.font_color, self, "选择字体颜色")
        if color.isValid():
            self.font_color = color
            self.update_color_button(color.name())
            self.on_text_config_changed('font_color', color.name())

    def update_color_button(self, hex_code):
        color = QColor(hex_code)
        self.color_btn.setText(hex_code.upper())
        self.color_btn.setStyleSheet(
            f"background-color: {hex_code}; color: {'white' if color.lightness() < 128 else 'black'}; "
            "font-weight: bold; border-radius: 4px; padding: 6px;"
        )

    def sync_layer_panel(self):
        """根据当前图片刷新图层列表和属性控件"""
        self._syncing = True
        try:
            self.layer_list.clear()
            stack = self.layer_model.stack
            image = self.collection.selected_image
            if image is not None:
                index = self.crop_combo.findData(image.crop.preset)
                self.crop_combo.setCurrentIndex(max(0, index))
            if stack is not None:
                for layer in reversed(stack.layers):
                    item = QListWidgetItem(("🖼️ " if layer.type == 'image' else "🔤 ") + layer.name)
                    item.setData(Qt.UserRole, layer.id)
                    item.setFlags(item.flags() | Qt.ItemIsUserCheckable)
                    item.setCheckState(Qt.Checked if layer.visible else Qt.Unchecked)
                    self.layer_list.addItem(item)
                    if layer.id == stack.selected_layer_id:
                        self.layer_list.setCurrentItem(item)
        finally:
            self._syncing = False
        self.sync_layer_controls()

    def sync_layer_controls(self):
        layer = self.layer_model.selected_layer()
        self.layer_settings_group.setEnabled(layer is not None)
        if layer is None:
            return
        self._syncing = True
        try:
            is_text = layer.type == 'text'
            for widget in (self.text_input, self.font_combo, self.color_btn, self.bold_cb, self.italic_cb):
                widget.setEnabled(is_text)
            if is_text:
                config = layer.text_config
                if not self.text_input.hasFocus():
                    self.text_input.setText(config.text)
                self.font_combo.setCurrentText(config.font_family)
                self.font_color = QColor(config.font_color)
                self.update_color_button(config.font_color)
                self.bold_cb.setChecked(config.bold)
                self.italic_cb.setChecked(config.italic)
            self.locked_cb.setChecked(layer.locked)
            self.pos_combo.setCurrentIndex(max(0, self.pos_combo.findData(layer.anchor)))
            self.scale_slider.setValue(int(round(layer.scale)))
            self.rotate_slider.setValue(int(round(layer.rotation)))
            self.opacity_slider.setValue(int(round(layer.opacity)))
        finally:
            self._syncing = False

    # ---- 撤销/重做 ----

    def on_history_changed(self, can_undo, can_redo):
        self.undo_btn.setEnabled(can_undo)
        self.redo_btn.setEnabled(can_redo)

    def on_undo(self):
        if self.collection.history.undo():
            self.on_model_changed()

    def on_redo(self):
        if self.collection.history.redo():
            self.on_model_changed()

    def on_model_changed(self):
        self.sync_layer_panel()
        self.refresh_preview()

    # ---- 导出 ----

    def select_output_dir(self):
        """选择输出文件夹"""
        d = QFileDialog.getExistingDirectory(self, "选择输出文件夹")
        if d:
            self.output_dir = d
            self.output_dir_label.setText(d)

    def on_export(self):
        """批量导出全部图片"""
        images = list(self.collection)
        if not images:
            QMessageBox.warning(self, "提示", "请先导入图片")
            return
        if not self.output_dir:
            QMessageBox.warning(self, "提示", "请选择输出文件夹")
            return
        out = os.path.abspath(self.output_dir)
        if any(os.path.abspath(str(Path(img.file_path).parent)) == out for img in images):
            QMessageBox.warning(self, "禁止", "默认禁止导出到原文件夹。请选择其他输出文件夹。")
            return

        settings = ExportSettings(
            format=self.format_combo.currentText(),
            quality=self.quality_spin.value(),
            scale=self.scale_spin.value(),
            output_folder=self.output_dir,
        )
        for image in images:
            image.processing = True
        self.export_images = images
        self.worker = ExportWorker(
            BatchExporter(settings).build_jobs(images), settings,
            isolation=self.settings.isolation, timeout=self.settings.export_timeout,
        )
        self.worker.progress.connect(self.on_export_progress)
        self.worker.finished_signal.connect(self.on_export_finished)
        self.export_btn.setEnabled(False)
        self.cancel_btn.setEnabled(True)
        self.progress_bar.setValue(0)
        self.worker.start()

    def on_cancel_export(self):
        if self.worker is not None:
            self.worker.cancel()
            self.cancel_btn.setEnabled(False)

    def on_export_progress(self, percent, total, message):
        self.progress_bar.setValue(percent)
        self.progress_label.setText(message)
        logger.info("[%d%%] %s", percent, message)

    def on_export_finished(self, summary):
        summary.apply_to(self.export_images)
        self.export_btn.setEnabled(True)
        self.cancel_btn.setEnabled(False)
        self.worker = None
        message = summary.message(self.output_dir)
        if summary.errors:
            QMessageBox.warning(self, "导出完成", message)
        else:
            QMessageBox.information(self, "导出完成", message)


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = QApplication(sys.argv)
    w = MainWindow()
    w.show()
    sys.exit(app.exec())


if __name__ == "__main__":
    main()
