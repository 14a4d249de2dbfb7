import asyncio, logging, signal, threading, traceback
from contextlib import contextmanager
from importlib.metadata import PackageNotFoundError, version
import zmq
from jupyter_client import protocol_version
from .channels import AsyncRouterThread, HeartbeatThread, IOPubThread, StdinRouterThread, ThreadBoundAsyncQueue
from .codec import Message, MessageCodec, MsgType
from .config import ConnectionConfig, KernelSettings, port_names
from .dispatcher import ExecutionDispatcher
from .engine import ExecutionEngine
from .errors import TransportError
from .introspection import default_handlers
from .state import KernelState, KernelStatus
from . import debug as _dbg_mod
from .debug import dbg

log = logging.getLogger("wirekernel.kernel")
worker_stop = object()
abort_clear = object()
channel_attrs = dict(hb="hb", iopub="iopub", stdin="stdin", shell="shell_router", control="control_router")


def _install_thread_excepthook(kernel:"KernelSupervisor"):
    prev = threading.excepthook
    def hook(args):
        if isinstance(args.exc_value, TransportError):
            kernel.channel_failed(args.exc_value)
            return
        prev(args)
        name = getattr(args.thread, "name", "")
        if name.endswith("-thread") and not kernel.shutdown_event.is_set():
            log.error("Critical thread crashed: %s", name, exc_info=(args.exc_type, args.exc_value, args.exc_traceback))
            kernel.stop(exit_code=1)
    threading.excepthook = hook
    return prev


class KernelSupervisor:
    """Owns every channel, the codec and `KernelState`; routes inbound messages by type.

    Shell requests run one at a time on the worker loop (the main thread); control requests
    are answered directly on the control thread so an interrupt never waits behind an execution."""
    def __init__(self, config:ConnectionConfig, engine:ExecutionEngine|None=None, settings:KernelSettings|None=None,
        context:zmq.Context|None=None):
        self.config = config
        self.settings = settings if settings is not None else KernelSettings.from_env()
        self.codec = MessageCodec.from_config(config)
        self.context = context if context is not None else zmq.Context.instance()
        if engine is None:
            from .bridge import IPythonEngine
            engine = IPythonEngine(use_jedi=self.settings.use_jedi, experimental_completions=self.settings.experimental_completions)
        self.engine = engine
        self.state = KernelState(publish=self._publish_status)
        self.iopub = self._make_channel("iopub")
        self.stdin = self._make_channel("stdin")
        self.hb = self._make_channel("hb")
        self.shell_router = self.control_router = None
        self.dispatcher = ExecutionDispatcher(self.state, self.engine, self.iopub_send,
            lambda parent, msg_type, content: self.send_reply("shell", parent, msg_type, content),
            request_input=self.request_input, interrupt_input=self.interrupt_input)
        self.handlers = default_handlers(self.engine)
        self.inbox = ThreadBoundAsyncQueue()
        self.loop = None
        self.shutdown_event = threading.Event()
        self.exit_code = 0
        self.failures = {}
        self.fail_lock = threading.Lock()
        self.aborting = False
        self.abort_handle = None
        self.shell_handlers = {MsgType.EXECUTE_REQUEST: self._handle_execute, MsgType.KERNEL_INFO_REQUEST: self._handle_kernel_info,
            MsgType.CONNECT_REQUEST: self._handle_connect, MsgType.COMM_INFO_REQUEST: self._handle_comm_info,
            MsgType.SHUTDOWN_REQUEST: self.handle_shutdown}
        self.control_handlers = {MsgType.INTERRUPT_REQUEST: self.handle_interrupt, MsgType.SHUTDOWN_REQUEST: self.handle_shutdown,
            MsgType.KERNEL_INFO_REQUEST: lambda msg, channel: self.send_reply(channel, msg, MsgType.KERNEL_INFO_REPLY, self.kernel_info_content())}

    def _make_channel(self, channel:str):
        "Build (or rebuild) the thread serving `channel`."
        addr = self.config.addr(self.config.port(channel))
        if channel == "hb": return HeartbeatThread(self.context, addr)
        if channel == "stdin": return StdinRouterThread(self.context, addr, self.codec)
        if channel == "iopub":
            # a rebuilt publisher keeps the queue so nothing already queued is lost
            prev = getattr(self, "iopub", None)
            return IOPubThread(self.context, addr, self.codec, qmax=self.settings.iopub_qmax, sndhwm=self.settings.iopub_sndhwm,
                q=prev.q if prev is not None else None)
        handler = self.handle_shell_msg if channel == "shell" else self.handle_control_msg
        return AsyncRouterThread(self.context, addr, self.codec, handler, channel)

    def start(self)->int:
        "Start channel threads and serve the shell worker on this thread until shutdown; returns the exit code."
        dbg("kernel starting...")
        prev_hook = _install_thread_excepthook(self)
        self.iopub.start()
        self.iopub.ready.wait()
        self.state.announce_starting()
        self.stdin.start()
        self.hb.start()
        in_main = threading.current_thread() is threading.main_thread()
        if in_main: prev_sigint = signal.signal(signal.SIGINT, self.handle_sigint)
        self.shell_router = self._make_channel("shell")
        self.control_router = self._make_channel("control")
        self.shell_router.start()
        self.control_router.start()
        dbg("waiting for routers to be ready...")
        self.shell_router.ready.wait()
        self.control_router.ready.wait()
        self.state.ready()
        dbg("kernel ready")
        try: self.run_main()
        finally:
            threading.excepthook = prev_hook
            self.shutdown_event.set()
            self._stop_channels()
            if in_main: signal.signal(signal.SIGINT, prev_sigint)
        return self.exit_code

    def _stop_channels(self):
        linger = self.settings.shutdown_linger
        timeout = 1 + max(linger, 0) / 1000
        for attr in ("shell_router", "control_router", "hb", "stdin", "iopub"):
            thread = getattr(self, attr)
            if thread is None: continue
            thread.stop(linger=linger)
            if thread.is_alive(): thread.join(timeout=timeout)

    def run_main(self):
        "Run the shell worker loop in the calling thread."
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self.loop = loop
        self.inbox.bind(loop)
        loop.create_task(self._consume_queue())
        try: loop.run_forever()
        finally: self._shutdown_loop()

    def _shutdown_loop(self):
        loop = self.loop
        pending = [task for task in asyncio.all_tasks(loop) if not task.done()]
        for task in pending: task.cancel()
        if pending: loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()
        asyncio.set_event_loop(None)
        self.loop = None

    def stop(self, exit_code:int|None=None):
        "Stop the worker loop; channel threads are torn down by `start`."
        if exit_code: self.exit_code = exit_code
        self.shutdown_event.set()
        self.inbox.suppress_late_puts()
        self.inbox.put((worker_stop, None))
        loop = self.loop
        if loop is not None and loop.is_running():
            try: loop.call_soon_threadsafe(loop.stop)
            except RuntimeError: pass

    def channel_failed(self, err:TransportError):
        "Rebind a channel whose loop died; a second failure of the same channel stops the kernel."
        if self.shutdown_event.is_set(): return
        with self.fail_lock:
            count = self.failures[err.channel] = self.failures.get(err.channel, 0) + 1
        if count > 1:
            log.error("%s channel failed again (%s); shutting down", err.channel, err.cause)
            self.stop(exit_code=1)
            return
        log.error("%s channel failed (%s); rebinding", err.channel, err.cause)
        thread = self._make_channel(err.channel)
        setattr(self, channel_attrs[err.channel], thread)
        thread.start()

    async def _consume_queue(self):
        dbg("WORKER started")
        while True:
            msg, channel = await self.inbox.get()
            if msg is worker_stop:
                dbg("WORKER stopping")
                asyncio.get_running_loop().stop()
                return
            if msg is abort_clear:
                self._stop_aborting()
                continue
            dbg(f"EXEC {msg.header.get('msg_type')} id={msg.short_id()}")
            try: await self._handle_message(msg, channel)
            except KeyboardInterrupt: log.warning("interrupt arrived outside an execution (%s)", msg.short_id())
            except Exception as exc: self._handle_internal_error(msg, channel, exc)
            dbg(f"DONE {msg.header.get('msg_type')} id={msg.short_id()}")

    def _handle_internal_error(self, msg:Message, channel:str, exc:Exception):
        msg_type = msg.msg_type
        log.warning("Internal error in %s handler", msg_type, exc_info=exc)
        if not msg_type.is_request: return
        tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
        reply = dict(status="error", ename=type(exc).__name__, evalue=str(exc), traceback=tb)
        handler = self.handlers.get(msg_type)
        if handler is not None: reply |= handler.defaults
        if msg_type == MsgType.EXECUTE_REQUEST:
            reply |= dict(execution_count=self.state.execution_count, user_expressions={}, payload=[])
            with self.busy_idle(msg):
                self.iopub_send(MsgType.ERROR, dict(ename=reply["ename"], evalue=reply["evalue"], traceback=tb), msg)
                self.send_reply(channel, msg, msg_type.reply_type, reply)
            return
        self.send_reply(channel, msg, msg_type.reply_type, reply)

    async def _handle_message(self, msg:Message, channel:str):
        msg_type = msg.msg_type
        handler = self.shell_handlers.get(msg_type)
        if handler is not None:
            res = handler(msg, channel)
            if asyncio.iscoroutine(res): await res
            return
        req_handler = self.handlers.get(msg_type)
        if req_handler is not None:
            introspect = msg_type in (MsgType.INSPECT_REQUEST, MsgType.COMPLETE_REQUEST)
            if introspect and self.settings.introspection_status:
                with self.busy_idle(msg): self.send_reply(channel, msg, req_handler.reply_type, req_handler(msg))
            else: self.send_reply(channel, msg, req_handler.reply_type, req_handler(msg))
            return
        self._unsupported(msg, channel)

    def _unsupported(self, msg:Message, channel:str):
        msg_type = msg.msg_type
        if not msg_type.is_request:
            log.debug("%s: ignoring %s", channel, msg_type)
            return
        content = dict(status="error", ename="UnsupportedRequest", evalue=f"{msg_type} is not handled on {channel}", traceback=[])
        self.send_reply(channel, msg, msg_type.reply_type, content)

    async def _handle_execute(self, msg:Message, channel:str):
        if self.aborting:
            dbg(f"ABORTING id={msg.short_id()}")
            self.dispatcher.abort(msg)
            return
        reply = await self.dispatcher.execute(msg)
        if reply and reply.get("status") == "error" and msg.content.get("stop_on_error", True):
            self._abort_pending_executes(append_abort_clear=self.settings.stop_on_error_timeout <= 0)
            self._start_aborting()

    def _start_aborting(self):
        self.aborting = True
        if self.abort_handle is not None:
            self.abort_handle.cancel()
            self.abort_handle = None
        timeout = self.settings.stop_on_error_timeout
        if timeout > 0: self.abort_handle = self.loop.call_later(timeout, self._stop_aborting)

    def _stop_aborting(self):
        self.aborting = False
        if self.abort_handle is not None:
            self.abort_handle.cancel()
            self.abort_handle = None

    def _abort_pending_executes(self, append_abort_clear:bool=False):
        "Answer every queued execute_request with `aborted`; other queued requests are served normally."
        drained = self.inbox.drain_nowait()
        if append_abort_clear: self.inbox.put((abort_clear, None))
        for msg, channel in drained:
            if msg is worker_stop or msg is abort_clear:
                self.inbox.put((msg, channel))
                if msg is worker_stop: break
                continue
            if msg.msg_type == MsgType.EXECUTE_REQUEST: self.dispatcher.abort(msg)
            else: self.inbox.put((msg, channel))

    def _handle_kernel_info(self, msg:Message, channel:str):
        with self.busy_idle(msg): self.send_reply(channel, msg, MsgType.KERNEL_INFO_REPLY, self.kernel_info_content())

    def _handle_connect(self, msg:Message, channel:str):
        content = {port: getattr(self.config, port) for port in port_names}
        self.send_reply(channel, msg, MsgType.CONNECT_REPLY, dict(status="ok") | content)

    def _handle_comm_info(self, msg:Message, channel:str):
        self.send_reply(channel, msg, MsgType.COMM_INFO_REPLY, dict(status="ok", comms={}))

    def handle_shell_msg(self, msg:Message):
        "Queue a shell message for the worker loop."
        dbg(f"DISPATCH {msg.header.get('msg_type')} id={msg.short_id()}")
        self.inbox.put((msg, "shell"))

    def handle_control_msg(self, msg:Message):
        "Handle a control request on the control thread."
        handler = self.control_handlers.get(msg.msg_type)
        if handler is None:
            self._unsupported(msg, "control")
            return
        try: handler(msg, "control")
        except Exception as exc:
            log.warning("Internal error in control %s handler", msg.msg_type, exc_info=exc)
            if msg.msg_type.is_request: self.send_reply("control", msg, msg.msg_type.reply_type, dict(status="error", ename=type(exc).__name__, evalue=str(exc), traceback=[]))

    def send_reply(self, channel:str, parent:Message, msg_type:MsgType, content:dict):
        "Queue a reply to `parent` on the shell or control router."
        router = self.control_router if channel == "control" else self.shell_router
        if router is None:
            dbg(f"QUEUE {channel} reply - NO ROUTER!")
            return
        dbg(f"REPLY {msg_type} id={parent.short_id()}")
        _dbg_mod.tlog(log, f"{channel} reply", parent)
        router.enqueue(self.codec.new_message(msg_type, content, parent=parent, identities=parent.identities))

    def iopub_send(self, msg_type:MsgType, content:dict, parent:Message|None, metadata:dict|None=None, buffers=None):
        self.iopub.send(msg_type, content, parent, metadata, buffers)

    def _publish_status(self, status:KernelStatus, parent:Message|None):
        if _dbg_mod.trace_msgs and parent: _dbg_mod.tlog(log, f"iopub status={status.value}", parent)
        self.iopub_send(MsgType.STATUS, dict(execution_state=status.value), parent)

    @contextmanager
    def busy_idle(self, parent:Message|None):
        "Send busy before work and idle after."
        self.state.set_busy(parent)
        try: yield
        finally: self.state.set_idle(parent)

    def request_input(self, prompt:str, password:bool, parent:Message|None)->str: return self.stdin.request_input(prompt, password, parent)

    def interrupt_input(self): self.stdin.interrupt_pending()

    def kernel_info_content(self)->dict:
        "Build kernel_info_reply content."
        try: impl_version = version("wirekernel")
        except PackageNotFoundError: impl_version = "0.0.0+local"
        return dict(status="ok", protocol_version=protocol_version, implementation="wirekernel", implementation_version=impl_version,
            language_info=self.engine.language_info(), banner=self.engine.banner(), help_links=[])

    def handle_sigint(self, signum, frame):
        "Treat SIGINT like interrupt_request; raise only while a synchronous cell runs on this thread."
        self.state.request_interrupt(reason="signal")
        if self.engine.handles_sigint(): raise KeyboardInterrupt

    def handle_interrupt(self, msg:Message, channel:str):
        "Cancel the pending execution, if any, and acknowledge."
        if not self.state.request_interrupt(): dbg("interrupt with nothing running")
        self.send_reply(channel, msg, MsgType.INTERRUPT_REPLY, {"status": "ok"})

    def handle_shutdown(self, msg:Message, channel:str):
        "Reply, unwind any running execution and stop the worker loop."
        reply = {"status": "ok", "restart": bool(msg.content.get("restart", False))}
        self.send_reply(channel, msg, MsgType.SHUTDOWN_REPLY, reply)
        self.state.request_interrupt(reason="shutdown")
        self.stop()


def run_kernel(config:ConnectionConfig)->int:
    "Run a kernel on the resolved `config` until shutdown; returns the process exit code."
    _dbg_mod.setup()
    signal.signal(signal.SIGINT, signal.default_int_handler)
    kernel = KernelSupervisor(config)
    return kernel.start()
