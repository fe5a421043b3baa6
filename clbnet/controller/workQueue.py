import heapq
import logging
import threading
import time
from collections import deque


class Result:
    """一次对账的结果，requeue_after > 0 表示在指定秒数后重新入队"""

    def __init__(self, requeue_after=0.0, requeue=False):
        self.requeue_after = requeue_after
        self.requeue = requeue

    def __eq__(self, other):
        if not isinstance(other, Result):
            return NotImplemented
        return self.requeue_after == other.requeue_after and self.requeue == other.requeue

    def __repr__(self):
        return f"Result(requeue_after={self.requeue_after}, requeue={self.requeue})"


class ExponentialBackoff:
    """按 key 记录失败次数，延迟从 base_delay 开始翻倍，最大 max_delay"""

    def __init__(self, base_delay=0.005, max_delay=1000.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures = {}
        self._lock = threading.Lock()

    def when(self, key):
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        # 避免指数过大时溢出
        if failures > 40:
            return self.max_delay
        return min(self.base_delay * (2 ** failures), self.max_delay)

    def forget(self, key):
        with self._lock:
            self._failures.pop(key, None)

    def num_requeues(self, key):
        with self._lock:
            return self._failures.get(key, 0)


class WorkQueue:
    """
    去重的延迟工作队列
    同一个 key 在队列中只会出现一次；正在处理中的 key 再次入队时，
    会在 done() 之后重新放回队列，保证同一 key 不会被并发处理
    """

    def __init__(self, backoff=None):
        self.backoff = backoff or ExponentialBackoff()
        self._cond = threading.Condition()
        self._queue = deque()
        self._dirty = set()
        self._processing = set()
        self._waiting = []
        # key -> 最早的到期时间，同一个 key 只保留一个有效的延迟项
        self._deadlines = {}
        self._seq = 0
        self._shutting_down = False

    def __len__(self):
        with self._cond:
            return len(self._queue)

    def _add_locked(self, key):
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add(self, key):
        with self._cond:
            if self._shutting_down:
                return
            self._add_locked(key)

    def add_after(self, key, delay):
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            when = time.monotonic() + delay
            existing = self._deadlines.get(key)
            if existing is not None and existing <= when:
                return
            self._deadlines[key] = when
            self._seq += 1
            heapq.heappush(self._waiting, (when, self._seq, key))
            # 唤醒等待中的 get，重新计算超时
            self._cond.notify_all()

    def add_rate_limited(self, key):
        self.add_after(key, self.backoff.when(key))

    def forget(self, key):
        self.backoff.forget(key)

    def _move_ready_locked(self, now):
        while self._waiting and self._waiting[0][0] <= now:
            when, _, key = heapq.heappop(self._waiting)
            # 被更早的 add_after 取代的旧项直接丢弃
            if self._deadlines.get(key) != when:
                continue
            del self._deadlines[key]
            self._add_locked(key)

    def get(self, timeout=None):
        """取出一个 key，队列关闭或超时返回 None"""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                now = time.monotonic()
                self._move_ready_locked(now)
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key
                if self._shutting_down:
                    return None
                wait = None
                if self._waiting:
                    wait = max(self._waiting[0][0] - now, 0)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key):
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self):
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def is_shutting_down(self):
        with self._cond:
            return self._shutting_down


class Controller:
    """
    控制器基类
    子类实现 reconcile(key) 并返回 Result；start() 后由 workers 个线程并发处理队列
    """

    name = "controller"

    def __init__(self, workers=1):
        self.logger = logging.getLogger(__name__)
        self.workers = max(1, workers)
        self.queue = WorkQueue()
        self._threads = []

    def enqueue(self, key):
        self.queue.add(key)

    def enqueue_after(self, key, delay):
        self.queue.add_after(key, delay)

    def reconcile(self, key):
        raise NotImplementedError

    def start(self):
        self.logger.info(f"{self.name} 控制器启动, workers={self.workers}")
        for i in range(self.workers):
            thread = threading.Thread(target=self._worker_loop, name=f"{self.name}-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self, timeout=5.0):
        self.queue.shutdown()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        self.logger.info(f"{self.name} 控制器已停止")

    def _worker_loop(self):
        while self.process_next_item():
            pass

    def process_next_item(self, timeout=None):
        """处理一个 key，队列关闭时返回 False"""
        key = self.queue.get(timeout)
        if key is None:
            return not self.queue.is_shutting_down()
        try:
            result = self.reconcile(key)
        except Exception as e:
            delay = self.queue.backoff.when(key)
            self.logger.error(f"{self.name} 对账失败 key={key}, {delay:.3f}s 后重试: {e}")
            self.queue.add_after(key, delay)
        else:
            if result is not None and result.requeue_after > 0:
                self.queue.forget(key)
                self.queue.add_after(key, result.requeue_after)
            elif result is not None and result.requeue:
                self.queue.add_rate_limited(key)
            else:
                self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True


def split_key(key):
    """namespace/name 形式的 key 拆分为 (namespace, name)，集群级对象 namespace 为 None"""
    if "/" in key:
        namespace, name = key.split("/", 1)
        return namespace, name
    return None, key
