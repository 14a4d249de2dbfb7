"Kernel execution state: status, execution counter, the single pending-execution slot and its cancellation signal."
import logging, threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable
from .codec import Message

log = logging.getLogger("wirekernel.state")


class KernelStatus(str, Enum):
    STARTING = "starting"
    IDLE = "idle"
    BUSY = "busy"


class CancelToken:
    "Cooperative cancellation signal handed to the execution engine."
    def __init__(self):
        self.event = threading.Event()
        self.lock = threading.RLock()
        self.callbacks = []
        self.reason = None

    @property
    def cancelled(self)->bool: return self.event.is_set()

    def add_callback(self, fn:Callable[[], None]):
        "Run `fn` on cancel; runs immediately if already cancelled."
        with self.lock:
            if not self.event.is_set():
                self.callbacks.append(fn)
                return
        fn()

    def cancel(self, reason:str="interrupt")->bool:
        "Set the signal and fire callbacks once; returns False if already cancelled."
        with self.lock:
            if self.event.is_set(): return False
            self.reason = reason
            self.event.set()
            callbacks, self.callbacks = self.callbacks, []
        for fn in callbacks:
            try: fn()
            except Exception: log.warning("cancel callback failed", exc_info=True)
        return True

    def wait(self, timeout:float|None=None)->bool: return self.event.wait(timeout)


@dataclass
class PendingExecution:
    parent:Message
    execution_count:int
    cancel:CancelToken = field(default_factory=CancelToken)
    thread_id:int|None = None

    @property
    def interrupt_requested(self)->bool: return self.cancel.cancelled


class KernelState:
    """Owns status, counter and the pending-execution slot.

    All mutation goes through one lock; `publish(status, parent)` is called while
    holding it so status messages reach IOPub in transition order."""
    def __init__(self, publish:Callable[[KernelStatus, Message|None], None]|None=None):
        self.publish = publish
        self.lock = threading.RLock()
        self.status = KernelStatus.STARTING
        self.execution_count = 0
        self.pending = None

    def _set(self, status:KernelStatus, parent:Message|None):
        self.status = status
        if self.publish is not None: self.publish(status, parent)

    def announce_starting(self):
        with self.lock: self._set(KernelStatus.STARTING, None)

    def ready(self):
        "Leave `starting` for `idle`."
        with self.lock:
            if self.status is KernelStatus.STARTING: self._set(KernelStatus.IDLE, None)

    def set_busy(self, parent:Message|None):
        with self.lock: self._set(KernelStatus.BUSY, parent)

    def set_idle(self, parent:Message|None):
        with self.lock: self._set(KernelStatus.IDLE, parent)

    @property
    def busy(self)->bool:
        with self.lock: return self.status is KernelStatus.BUSY

    def snapshot(self)->tuple[KernelStatus, int, PendingExecution|None]:
        with self.lock: return self.status, self.execution_count, self.pending

    def begin_execution(self, parent:Message, store_history:bool=True)->PendingExecution:
        """Claim the pending slot and pick the count for `parent`.

        With `store_history` the next counter value is reserved; otherwise the
        last assigned value is reported and the counter is left alone."""
        with self.lock:
            if self.pending is not None: raise RuntimeError(f"execution {self.pending.parent.short_id()} already pending")
            if store_history: self.execution_count += 1
            self.pending = PendingExecution(parent, self.execution_count, thread_id=threading.get_ident())
            return self.pending

    def finish_execution(self, pending:PendingExecution):
        with self.lock:
            if self.pending is pending: self.pending = None

    def request_interrupt(self, reason:str="interrupt_request")->bool:
        "Signal cancellation of the pending execution; False if nothing is running."
        with self.lock: pending = self.pending
        if pending is None: return False
        log.info("interrupt (%s) requested for %s", reason, pending.parent.short_id())
        pending.cancel.cancel(reason)
        return True
