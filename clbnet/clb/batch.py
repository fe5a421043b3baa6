import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 200
MAX_BATCH_INTERVAL = 2.0

_STOP = object()


class BatchTask:
    """批处理任务，调用方通过 future 拿到结果"""

    def __init__(self, region, lb_id):
        self.region = region
        self.lb_id = lb_id
        self.future = Future()

    def set_result(self, result=None):
        if not self.future.done():
            self.future.set_result(result)

    def set_error(self, err):
        if not self.future.done():
            self.future.set_exception(err)

    def result(self, timeout=None):
        return self.future.result(timeout)


class BatchProcessor:
    """
    把零散的 CLB 请求合并成批量请求
    任务先进入队列，攒够 batch_size 个或距离上次处理超过 interval 秒时，
    按 (region, lb_id) 分组后在线程池中并发处理，同一个 lb 的分组持有该 lb 的锁串行执行
    """

    def __init__(self, name, handler, lb_locks=None, batch_size=MAX_BATCH_SIZE,
                 interval=MAX_BATCH_INTERVAL, workers=10):
        self.name = name
        self.handler = handler
        self.lb_locks = lb_locks
        self.batch_size = batch_size
        self.interval = interval
        self._queue = queue.Queue()
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"batch-{name}")
        self._thread = None
        self.running = False

    def start(self):
        if self.running:
            return
        self.running = True
        self._thread = threading.Thread(target=self._loop, name=f"batch-{self.name}", daemon=True)
        self._thread.start()
        logger.info(f"batch processor {self.name} started")

    def stop(self):
        """停止接收任务，处理完已入队的任务后退出"""
        if not self.running:
            return
        self.running = False
        self._queue.put(_STOP)
        self._thread.join()
        self._executor.shutdown(wait=True)
        logger.info(f"batch processor {self.name} stopped")

    def submit(self, task):
        if not self.running:
            task.set_error(RuntimeError(f"batch processor {self.name} is not running"))
            return task.future
        self._queue.put(task)
        return task.future

    def _loop(self):
        batch = []
        deadline = time.monotonic() + self.interval
        while True:
            timeout = max(deadline - time.monotonic(), 0)
            try:
                task = self._queue.get(timeout=timeout)
            except queue.Empty:
                task = None
            if task is _STOP:
                self._flush(batch)
                return
            if task is not None:
                batch.append(task)
                if len(batch) > self.batch_size:
                    self._flush(batch)
                    batch = []
                    deadline = time.monotonic() + self.interval
                    continue
            if time.monotonic() >= deadline:
                self._flush(batch)
                batch = []
                deadline = time.monotonic() + self.interval

    def _flush(self, batch):
        if not batch:
            return
        groups = {}
        for task in batch:
            groups.setdefault((task.region, task.lb_id), []).append(task)
        logger.debug(f"batch processor {self.name} flush {len(batch)} tasks in {len(groups)} groups")
        for (region, lb_id), tasks in groups.items():
            self._executor.submit(self._run_group, region, lb_id, tasks)

    def _run_group(self, region, lb_id, tasks):
        lock = self.lb_locks.get(lb_id) if self.lb_locks is not None else None
        try:
            if lock is not None:
                with lock:
                    self.handler(region, lb_id, tasks)
            else:
                self.handler(region, lb_id, tasks)
        except Exception as e:
            logger.error(f"batch {self.name} failed for lb {lb_id} ({len(tasks)} tasks): {e}")
            for task in tasks:
                task.set_error(e)
            return
        for task in tasks:
            task.set_error(RuntimeError(f"batch {self.name} returned no result for lb {lb_id}"))
