# watermarker/history.py
"""
撤销/重做管理

基于快照而不是差异：每条记录持有自己独立的深拷贝，
读取和写入快照时都会再次拷贝，避免当前状态与历史共享对象。
"""
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

MAX_HISTORY = 50


@dataclass(frozen=True)
class HistoryEntry:
    kind: str  # 'single' | 'all'
    image_id: Optional[str] = None
    before: object = None
    after: object = None
    # kind == 'all' 时使用: image_id -> ImageState
    all_before: dict = field(default_factory=dict)
    all_after: dict = field(default_factory=dict)

    @classmethod
    def single(cls, image_id, before, after):
        return cls('single', image_id=image_id, before=before.clone(), after=after.clone())

    @classmethod
    def all(cls, before_map, after_map):
        return cls(
            'all',
            all_before={k: v.clone() for k, v in before_map.items()},
            all_after={k: v.clone() for k, v in after_map.items()},
        )


class HistoryManager:
    def __init__(self, resolve_image, max_entries=MAX_HISTORY):
        """
        参数:
            resolve_image: 根据 id 返回 ImageItem，不存在时返回 None
            max_entries: 撤销栈上限，超出时丢弃最早的记录
        """
        self.resolve_image = resolve_image
        self.undo_stack = deque(maxlen=max_entries)
        self.redo_stack = []
        self._listeners = []

    def add_listener(self, callback):
        """callback(can_undo, can_redo)，每次栈变化后调用"""
        self._listeners.append(callback)

    @property
    def can_undo(self):
        return len(self.undo_stack) > 0

    @property
    def can_redo(self):
        return len(self.redo_stack) > 0

    def _notify(self):
        for callback in self._listeners:
            callback(self.can_undo, self.can_redo)

    def commit(self, entry):
        self.undo_stack.append(entry)
        self.redo_stack.clear()
        logger.debug("history commit: %s (%d entries)", entry.kind, len(self.undo_stack))
        self._notify()

    def commit_single(self, image, before):
        """用 before 快照和图片当前状态生成一条记录"""
        self.commit(HistoryEntry.single(image.id, before, image.snapshot()))

    def commit_all(self, before_map, images):
        after_map = {img.id: img.snapshot() for img in images}
        self.commit(HistoryEntry.all(before_map, after_map))

    def clear(self):
        self.undo_stack.clear()
        self.redo_stack.clear()
        self._notify()

    def undo(self):
        if not self.undo_stack:
            return False
        entry = self.undo_stack.pop()
        mirror = self._apply(entry, use_before=True)
        if mirror is not None:
            self.redo_stack.append(mirror)
        self._notify()
        return mirror is not None

    def redo(self):
        if not self.redo_stack:
            return False
        entry = self.redo_stack.pop()
        mirror = self._apply(entry, use_before=False)
        if mirror is not None:
            self.undo_stack.append(mirror)
        self._notify()
        return mirror is not None

    def _apply(self, entry, use_before):
        """
        应用快照并返回镜像记录

        镜像记录保存应用前的当前状态，放到另一个栈中。
        引用已删除图片的记录直接忽略（返回 None）。
        """
        if entry.kind == 'single':
            image = self.resolve_image(entry.image_id)
            if image is None:
                logger.debug("history entry for missing image %s ignored", entry.image_id)
                return None
            current = image.snapshot()
            image.restore(entry.before if use_before else entry.after)
            if use_before:
                return HistoryEntry.single(entry.image_id, entry.before, current)
            return HistoryEntry.single(entry.image_id, current, entry.after)

        targets = entry.all_before if use_before else entry.all_after
        current = {}
        for image_id, state in targets.items():
            image = self.resolve_image(image_id)
            if image is None:
                continue
            current[image_id] = image.snapshot()
            image.restore(state)
        if not current:
            return None
        if use_before:
            before = {k: v for k, v in entry.all_before.items() if k in current}
            return HistoryEntry.all(before, current)
        after = {k: v for k, v in entry.all_after.items() if k in current}
        return HistoryEntry.all(current, after)
