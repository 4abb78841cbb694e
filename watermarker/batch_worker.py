# watermarker/batch_worker.py
"""
批量导出

逐张处理（不并行），每张图片在独立的执行上下文中合成，
以便按张报告进度，并在两张图片之间响应取消。
超时的子进程会被终止；线程无法终止，超时后作为守护线程被放弃。
"""
import logging
import multiprocessing
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from watermarker.errors import ExportWriteError
from watermarker.exporter import ExportJobResult, build_export_job, process_image_job, write_output

logger = logging.getLogger(__name__)

ISOLATION_MODES = ('process', 'thread')
POLL_INTERVAL = 0.05


def progress_percent(stage, completed, total):
    if total == 0:
        return 0
    if stage == 'saving':
        return min(99, (completed + 0.5) / total * 100)
    if stage in ('processing', 'preparing'):
        return min(99, completed / total * 100)
    return min(100, completed / total * 100)


def format_progress_text(stage, completed, total, current_index=None, file_name=None):
    label = 'image' if total == 1 else 'images'
    suffix = f" - {file_name}" if file_name else ''
    current = current_index if current_index is not None else completed + 1
    if stage == 'preparing':
        return f"Preparing {total} {label}..."
    if stage == 'processing':
        return f"Processing {current} of {total} {label}{suffix}"
    if stage == 'saving':
        return f"Saving {current} of {total} {label}{suffix}"
    return f"{completed} of {total} {label} processed"


@dataclass
class ProgressEvent:
    stage: str
    completed: int
    total: int
    current_index: Optional[int] = None
    file_name: Optional[str] = None

    @property
    def percent(self):
        return progress_percent(self.stage, self.completed, self.total)

    @property
    def text(self):
        return format_progress_text(self.stage, self.completed, self.total, self.current_index, self.file_name)


@dataclass
class BatchSummary:
    total: int
    processed: int = 0
    outputs: dict = field(default_factory=dict)  # image_id -> 输出路径
    errors: dict = field(default_factory=dict)   # image_id -> 错误信息
    file_names: dict = field(default_factory=dict)
    cancelled: bool = False
    permission_error: bool = False

    @property
    def exported(self):
        return len(self.outputs)

    def apply_to(self, images):
        """把结果写回 ImageItem 的 processed/error 标记"""
        for image in images:
            if image.id in self.outputs:
                image.processed = True
                image.error = None
            elif image.id in self.errors:
                image.error = self.errors[image.id]
            image.processing = False

    def message(self, folder=''):
        if self.errors:
            lines = [f"导出完成，{len(self.errors)} 张失败:"]
            lines += [f"  {self.file_names.get(k, k)}: {v}" for k, v in self.errors.items()]
            if self.permission_error:
                lines.append("检测到权限错误，已取消剩余图片。请检查输出文件夹权限。")
            return "\n".join(lines)
        if self.cancelled:
            return f"导出已取消，已保存 {self.exported} 张图片"
        return f"导出完成！{self.exported} 张图片已保存到 {folder}"


def _isolated_entry(job, results):
    # 执行上下文的入口：任何异常都转换为失败结果放回队列
    try:
        result = process_image_job(job)
    except Exception as e:
        result = _failed(job, f"合成失败: {e}")
    results.put(result)


def _stop_worker(worker, results):
    if isinstance(worker, threading.Thread):
        return
    if worker.is_alive():
        worker.terminate()
    worker.join()
    results.close()


class BatchExporter:
    def __init__(self, settings, progress_callback=None, isolation='process', timeout=None, start_method=None):
        """
        参数:
            settings: ExportSettings（格式、质量、缩放、输出文件夹）
            progress_callback(ProgressEvent)
            isolation: 'process' 每张图片一个独立进程，'thread' 独立线程
            timeout: 单张图片的合成超时（秒），None 表示不限制
            start_method: 子进程启动方式（'spawn'、'fork' 等），默认使用平台默认值
        """
        if isolation not in ISOLATION_MODES:
            raise ValueError(f"未知的隔离方式: {isolation}")
        self.settings = settings
        self.progress_callback = progress_callback
        self.isolation = isolation
        self.timeout = timeout
        self.start_method = start_method
        self._cancel = threading.Event()

    def cancel(self):
        """协作式取消：当前图片处理完后停止"""
        self._cancel.set()

    @property
    def cancel_requested(self):
        return self._cancel.is_set()

    def _emit(self, *args):
        if self.progress_callback:
            self.progress_callback(ProgressEvent(*args))

    def build_jobs(self, images):
        return [build_export_job(image, self.settings) for image in images]

    def export_images(self, images):
        summary = self.run(self.build_jobs(images))
        summary.apply_to(images)
        return summary

    def _start_worker(self, job):
        if self.isolation == 'process':
            ctx = multiprocessing.get_context(self.start_method)
            results = ctx.Queue(maxsize=1)
            worker = ctx.Process(target=_isolated_entry, args=(job, results), daemon=True)
        else:
            results = queue.Queue(maxsize=1)
            worker = threading.Thread(target=_isolated_entry, args=(job, results), daemon=True)
        worker.start()
        return worker, results

    def _wait_for_result(self, job, worker, results):
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        while True:
            try:
                return results.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                pass
            if not worker.is_alive():
                # 进程退出前放入的结果可能还在管道中
                try:
                    return results.get(timeout=POLL_INTERVAL)
                except queue.Empty:
                    return _failed(job, f"合成进程异常退出 (exitcode={getattr(worker, 'exitcode', None)})")
            if deadline is not None and time.monotonic() >= deadline:
                return _failed(job, f"合成超时（{self.timeout} 秒）")

    def _run_isolated(self, job):
        """在独立的进程或线程中合成一张图片；任何错误都以失败结果返回"""
        try:
            worker, results = self._start_worker(job)
        except Exception as e:
            logger.exception("无法启动合成 (%s)", job.file_name)
            return _failed(job, f"无法启动合成: {e}")
        try:
            return self._wait_for_result(job, worker, results)
        except Exception as e:
            logger.exception("合成失败 (%s)", job.file_name)
            return _failed(job, f"合成失败: {e}")
        finally:
            _stop_worker(worker, results)

    def run(self, jobs):
        total = len(jobs)
        summary = BatchSummary(total=total)
        self._emit('preparing', 0, total)

        for index, job in enumerate(jobs):
            if self._cancel.is_set():
                summary.cancelled = True
                break
            summary.file_names[job.image_id] = job.file_name
            self._emit('processing', summary.processed, total, index + 1, job.file_name)
            result = self._run_isolated(job)

            if result.success:
                self._emit('saving', summary.processed, total, index + 1, job.file_name)
                try:
                    path = write_output(result.data, job.file_name, self.settings.output_folder, self.settings.format)
                    summary.outputs[job.image_id] = path
                    logger.info("已保存: %s", path)
                except ExportWriteError as e:
                    summary.errors[job.image_id] = str(e)
                    logger.warning("写入失败 (%s): %s", job.file_name, e)
                    if e.permission:
                        # 同样的权限错误会重复出现，直接取消剩余图片
                        summary.permission_error = True
                        self._cancel.set()
            else:
                summary.errors[job.image_id] = result.error
                logger.warning("错误 (%s): %s", job.file_name, result.error)

            summary.processed += 1
            self._emit('done', summary.processed, total)

        if self._cancel.is_set() and summary.processed < total:
            summary.cancelled = True
        return summary


def _failed(job, message):
    return ExportJobResult(job.image_id, False, error=message)
