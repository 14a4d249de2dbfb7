"One transport per logical channel: heartbeat echo, IOPub publisher, stdin router, and async shell/control routers."
import asyncio, logging, queue, sys, threading
from collections import deque
from fastcore.basics import store_attr
import zmq, zmq.asyncio
from .codec import Message, MessageCodec, MsgType
from .errors import TransportError
from . import debug as _dbg_mod
from .debug import dbg

log = logging.getLogger("wirekernel.channels")


class ThreadBoundAsyncQueue:
    "Thread-safe put + asyncio get once bound to an event loop."

    def __init__(self):
        self.loop, self.q, self.pending, self.lock = None, None, deque(), threading.Lock()
        self.suppress_late = False
        self.bound_once = False

    def bind(self, loop:asyncio.AbstractEventLoop):
        self.loop = loop
        self.q = asyncio.Queue()
        self.bound_once = True
        with self.lock:
            for item in self.pending: self.q.put_nowait(item)
            self.pending.clear()

    def put(self, item):
        if self.loop is None or self.q is None:
            if self.bound_once:
                if not self.suppress_late: log.error("Queue put after loop lost; dropping")
                return
            with self.lock: self.pending.append(item)
            return
        try: self.loop.call_soon_threadsafe(self.q.put_nowait, item)
        except RuntimeError:
            if self.bound_once:
                if not self.suppress_late: log.error("Queue put after loop lost; dropping")
                return
            with self.lock: self.pending.append(item)

    async def get(self):
        if self.q is None: raise RuntimeError("queue not bound")
        return await self.q.get()

    def drain_nowait(self)->list:
        if self.q is None: return []
        out = []
        while True:
            try: out.append(self.q.get_nowait())
            except asyncio.QueueEmpty: return out

    def suppress_late_puts(self): self.suppress_late = True


class ChannelThread(threading.Thread):
    "Daemon thread owning one socket; socket errors surface as `TransportError` for the supervisor."
    channel = "?"

    def __init__(self, context:zmq.Context, addr:str):
        super().__init__(daemon=True, name=f"{self.channel}-thread")
        self.context, self.addr = context, addr
        self.stop_event = threading.Event()
        self.ready = threading.Event()
        self.linger = 0

    def run(self):
        try: self.serve()
        except zmq.ZMQError as err:
            if self.stop_event.is_set(): return
            raise TransportError(self.channel, err) from err
        finally: self.ready.set()

    def serve(self): raise NotImplementedError

    def stop(self, linger:int=0):
        self.linger = linger
        self.stop_event.set()


class HeartbeatThread(ChannelThread):
    "Echo every heartbeat frame back unchanged; never looks at kernel state."
    channel = "hb"

    def serve(self):
        sock = self.context.socket(zmq.REP)
        try:
            sock.linger = 0
            sock.bind(self.addr)
            self.ready.set()
            poller = zmq.Poller()
            poller.register(sock, zmq.POLLIN)
            while not self.stop_event.is_set():
                events = dict(poller.poll(100))
                if sock in events and events[sock] & zmq.POLLIN: sock.send_multipart(sock.recv_multipart(copy=False), copy=False)
        finally: sock.close(0)


class IOPubThread(ChannelThread):
    "IOPub publisher thread using a sync PUB socket fed by a bounded queue."
    channel = "iopub"

    def __init__(self, context:zmq.Context, addr:str, codec:MessageCodec, qmax:int=10000, sndhwm:int|None=None, q:queue.Queue|None=None):
        super().__init__(context, addr)
        store_attr("codec,sndhwm")
        self.q = q if q is not None else queue.Queue(maxsize=qmax)
        self.enqueued = self.sent = self.dropped = 0

    def send(self, msg_type:MsgType|str, content:dict, parent:Message|None, metadata:dict|None=None, buffers=None):
        "Queue an IOPub message for publication; drop on a full queue."
        self.enqueued += 1
        try: self.q.put_nowait((msg_type, content, parent, metadata, buffers))
        except queue.Full:
            self.dropped += 1
            if self.dropped in (1, 100, 1000): log.warning("IOPub queue full; dropping. enq=%d sent=%d", self.enqueued, self.sent)

    def serve(self):
        sock = self.context.socket(zmq.PUB)
        try:
            sock.linger = 0
            if self.sndhwm is not None: sock.sndhwm = self.sndhwm
            sock.bind(self.addr)
            self.ready.set()
            dbg(f"iopub bound to {self.addr}")
            while True:
                item = self.q.get()
                if item is None: break
                msg_type, content, parent, metadata, buffers = item
                msg = self.codec.new_message(msg_type, content, parent=parent, metadata=metadata,
                    identities=[f"kernel.{self.codec.session_id}.{msg_type}".encode()], buffers=buffers or ())
                if msg_type == MsgType.STATUS: dbg(f"iopub SEND status={content.get('execution_state')} parent={msg.parent_id}")
                sock.send_multipart(self.codec.encode(msg))
                self.sent += 1
        finally: sock.close(self.linger)

    def stop(self, linger:int=0):
        super().stop(linger)
        try: self.q.put_nowait(None)
        except queue.Full:
            while True:
                try: self.q.get_nowait()
                except queue.Empty: break
            self.q.put_nowait(None)


input_interrupted = object()


class StdinRouterThread(ChannelThread):
    "Send `input_request` on behalf of a running execution and route `input_reply` back to it."
    channel = "stdin"

    def __init__(self, context:zmq.Context, addr:str, codec:MessageCodec):
        super().__init__(context, addr)
        self.codec = codec
        self.pending_lock = threading.Lock()
        self.requests = queue.Queue()
        self.pending = {}
        self.pending_by_ident = {}

    def request_input(self, prompt:str, password:bool, parent:Message|None, timeout:float|None=None)->str:
        "Send input_request and block until the reply arrives; raises KeyboardInterrupt if interrupted."
        waiter = queue.Queue()
        self.requests.put((prompt, password, parent, waiter))
        try: value = waiter.get(timeout=timeout)
        except queue.Empty as err: raise TimeoutError("timed out waiting for input reply") from err
        if value is input_interrupted: raise KeyboardInterrupt
        return value

    def serve(self):
        sock = self.context.socket(zmq.ROUTER)
        try:
            sock.linger = 0
            if hasattr(zmq, "ROUTER_HANDOVER"): sock.router_handover = 1
            sock.bind(self.addr)
            self.ready.set()
            poller = zmq.Poller()
            poller.register(sock, zmq.POLLIN)
            while not self.stop_event.is_set():
                self._drain_requests(sock)
                events = dict(poller.poll(50))
                if sock in events and events[sock] & zmq.POLLIN:
                    msg = self.codec.try_decode(sock.recv_multipart(), self.channel)
                    if msg is not None and msg.header.get("msg_type") == MsgType.INPUT_REPLY: self._route_reply(msg)
        finally:
            sock.close(0)
            self.interrupt_pending()

    def _route_reply(self, msg:Message):
        waiter = None
        with self.pending_lock:
            pending = self.pending.pop(msg.parent_id, None) if msg.parent_id else None
            if pending is not None:
                key, waiter = pending
                waiters = self.pending_by_ident.get(key)
                if waiters and waiter in waiters:
                    waiters.remove(waiter)
                    if not waiters: self.pending_by_ident.pop(key, None)
            else:
                key = msg.identities
                waiters = self.pending_by_ident.get(key)
                if waiters:
                    waiter = waiters.popleft()
                    if not waiters: self.pending_by_ident.pop(key, None)
                    for msg_id, (_, w) in list(self.pending.items()):
                        if w is waiter: self.pending.pop(msg_id)
        if waiter is None:
            log.warning("stdin: input_reply with no pending request (parent=%s)", msg.parent_id)
            return
        waiter.put(msg.content.get("value", ""))

    def _drain_requests(self, sock:zmq.Socket):
        while True:
            try: prompt, password, parent, waiter = self.requests.get_nowait()
            except queue.Empty: return
            idents = parent.identities if parent is not None else ()
            msg = self.codec.new_message(MsgType.INPUT_REQUEST, dict(prompt=prompt, password=bool(password)),
                parent=parent, identities=idents)
            with self.pending_lock:
                self.pending[msg.msg_id] = (tuple(idents), waiter)
                self.pending_by_ident.setdefault(tuple(idents), deque()).append(waiter)
            sock.send_multipart(self.codec.encode(msg))

    def interrupt_pending(self):
        "Cancel pending input requests and wake any waiters."
        with self.pending_lock:
            waiters = [waiter for _, waiter in self.pending.values()]
            self.pending.clear()
            self.pending_by_ident.clear()
        while True:
            try: *_, waiter = self.requests.get_nowait()
            except queue.Empty: break
            waiters.append(waiter)
        for waiter in waiters: waiter.put(input_interrupted)


class AsyncRouterThread(ChannelThread):
    "ROUTER socket on its own asyncio loop: a receive loop feeding `handler` and a send loop draining `outbox`."

    def __init__(self, context:zmq.Context, addr:str, codec:MessageCodec, handler, channel:str):
        self.channel = channel
        super().__init__(context, addr)
        store_attr("codec,handler")
        self.async_context = zmq.asyncio.Context.shadow(context)
        self.loop = None
        self.outbox = ThreadBoundAsyncQueue()
        self.enqueued = self.sent = self.send_errors = 0

    def enqueue(self, msg:Message):
        self.enqueued += 1
        backlog = self.enqueued - self.sent
        if backlog in (1000, 2000, 5000): log.warning("%s backlog growing: enq=%d sent=%d", self.channel, self.enqueued, self.sent)
        self.outbox.put(msg)

    def stop(self, linger:int=0):
        super().stop(linger)
        self.outbox.suppress_late_puts()
        self.outbox.put(None)

    def serve(self):
        try: asyncio.run(self._run())
        finally: self.loop = None

    async def _run(self):
        self.loop = asyncio.get_running_loop()
        if sys.platform.startswith("win") and not isinstance(self.loop, asyncio.SelectorEventLoop):
            log.warning("Windows event loop may not support zmq.asyncio; consider SelectorEventLoop policy.")
        self.outbox.bind(self.loop)
        sock = self.async_context.socket(zmq.ROUTER)
        if hasattr(zmq, "ROUTER_HANDOVER"): sock.router_handover = 1
        sock.linger = 0
        try: sock.bind(self.addr)
        except zmq.ZMQError:
            sock.close(0)
            raise
        self.ready.set()
        recv = asyncio.ensure_future(self._recv_loop(sock))
        try: await self._send_loop(sock, recv)
        finally:
            recv.cancel()
            await asyncio.gather(recv, return_exceptions=True)
            sock.close(self.linger)
        if recv.done() and not recv.cancelled() and (err := recv.exception()) is not None: raise err

    async def _send_loop(self, sock:zmq.asyncio.Socket, recv:asyncio.Future):
        "Send queued replies in order until stopped or the receive loop dies."
        while True:
            get = asyncio.ensure_future(self.outbox.get())
            await asyncio.wait([get, recv], return_when=asyncio.FIRST_COMPLETED)
            if not get.done():
                get.cancel()
                return
            msg = get.result()
            if msg is None: return
            dbg(f"{self.channel} SEND {msg.header.get('msg_type')} parent={(msg.parent_id or '?')[:8]}")
            try:
                await sock.send_multipart(self.codec.encode(msg))
                self.sent += 1
            except zmq.ZMQError as exc:
                self.send_errors += 1
                log.error("%s send error: %s", self.channel, exc, exc_info=exc)
                if exc.errno in (zmq.ETERM, zmq.ENOTSOCK): raise

    async def _recv_loop(self, sock:zmq.asyncio.Socket):
        while not self.stop_event.is_set():
            frames = await sock.recv_multipart()
            msg = self.codec.try_decode(frames, self.channel)
            if msg is None: continue
            dbg(f"{self.channel} RECV {msg.header.get('msg_type')} id={msg.short_id()}")
            _dbg_mod.tlog(log, f"{self.channel} recv", msg)
            try: self.handler(msg)
            except Exception: log.exception("%s handler failed for %s", self.channel, msg.header.get("msg_type"))
