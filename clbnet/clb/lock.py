import threading


class LBLocks:
    """每个 lb 一把锁，同一个 lb 上的写操作串行执行，锁创建后不回收"""

    def __init__(self):
        self._lock = threading.Lock()
        self._locks = {}

    def get(self, lb_id):
        with self._lock:
            lock = self._locks.get(lb_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[lb_id] = lock
            return lock

    def __len__(self):
        with self._lock:
            return len(self._locks)
