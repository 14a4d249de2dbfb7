import asyncio, builtins, contextvars, getpass, json, logging, os, signal, sys, threading, _thread
from contextlib import contextmanager
from typing import Callable
from IPython.core import getipython as _getipython_mod
from IPython.core.async_helpers import _asyncio_runner
from IPython.core.application import BaseIPythonApplication
from IPython.core.completer import provisionalcompleter as _provisionalcompleter
from IPython.core.completer import rectify_completions as _rectify_completions
from IPython.core.displayhook import DisplayHook
from IPython.core.displaypub import DisplayPublisher
from IPython.core.error import StdinNotImplementedError
from IPython.core.interactiveshell import InteractiveShell
from IPython.core.shellapp import InteractiveShellApp
from .engine import ExecuteOutcome, ExecuteRequest, ExecutionEngine, OutputSink
from .errors import ExecutionError
from .state import CancelToken

_EXPERIMENTAL_COMPLETIONS_KEY = "_jupyter_types_experimental"
log = logging.getLogger("wirekernel.bridge")
_STARTUP_DONE = False


class _ThreadLocalStream:
    def __init__(self, name:str, default):
        "Create a context-local stream proxy for `name` with `default` fallback."
        self._name = name
        self._default = default

    def _target(self):
        target = _IO_STATE.get(self._name)
        return self._default if target is None else target

    def write(self, value)->int:
        target = self._target()
        if target is None: return 0
        return target.write(value)

    def writelines(self, lines)->int:
        total = 0
        for line in lines: total += self.write(line) or 0
        return total

    def flush(self):
        target = self._target()
        if target is not None and hasattr(target, "flush"): target.flush()

    def isatty(self)->bool:
        target = self._target()
        if target is None: return False
        return bool(target.isatty()) if hasattr(target, "isatty") else False

_chans = ("shell", "stdout", "stderr", "request_input", "allow_stdin")

class _ThreadLocalIO:
    def __init__(self):
        "Capture original IO hooks and prepare context-local state."
        self._installed = False
        self._vars = {name: contextvars.ContextVar(f"wirekernel.{name}", default=None) for name in _chans}
        self._orig_stdout = sys.stdout
        self._orig_stderr = sys.stderr
        self._orig_input = builtins.input
        self._orig_getpass = getpass.getpass
        self._orig_get_ipython = _getipython_mod.get_ipython

    def install(self):
        "Install context-local stdout/stderr/input/getpass/get_ipython hooks."
        if self._installed: return
        sys.stdout = _ThreadLocalStream("stdout", self._orig_stdout)
        sys.stderr = _ThreadLocalStream("stderr", self._orig_stderr)
        builtins.input = _thread_local_input
        getpass.getpass = _thread_local_getpass
        _getipython_mod.get_ipython = _thread_local_get_ipython
        self._installed = True

    def get(self, name:str): return self._vars[name].get()

    def push(self, shell, stdout, stderr, request_input:Callable[[str, bool], str], allow_stdin:bool)->dict:
        args = locals()
        return {name: self._vars[name].set(args[name]) for name in _chans}

    def pop(self, prev:dict):
        for name in _chans: self._vars[name].reset(prev[name])


_IO_STATE = _ThreadLocalIO()


def _thread_local_get_ipython():
    shell = _IO_STATE.get("shell")
    return shell if shell is not None else _IO_STATE._orig_get_ipython()


def _request_input(prompt:str, password:bool, what:str)->str:
    handler = _IO_STATE.get("request_input")
    if handler is None or not _IO_STATE.get("allow_stdin"):
        raise StdinNotImplementedError(f"{what} was called, but this frontend does not support input requests.")
    return handler(str(prompt), password)


def _thread_local_input(prompt:str="")->str: return _request_input(prompt, False, "raw_input")


def _thread_local_getpass(prompt:str="Password: ", stream=None)->str: return _request_input(prompt, True, "getpass")


@contextmanager
def _thread_local_io(shell, stdout, stderr, request_input:Callable[[str, bool], str], allow_stdin:bool):
    "Bind IO hooks to the running request for the duration of the block."
    prev = _IO_STATE.push(shell, stdout, stderr, request_input, allow_stdin)
    try: yield
    finally: _IO_STATE.pop(prev)


class SinkStream:
    "Line-buffered text stream that forwards complete lines to the active `OutputSink`."
    def __init__(self, name:str):
        self.name = name
        self.sink = None
        self.peer = None
        self._buffer = ""

    def write(self, value)->int:
        if value is None: return 0
        if isinstance(value, bytes): text = value.decode(errors="replace")
        elif isinstance(value, str): text = value
        else: text = str(value)
        if not text: return 0
        # keep interleaving with the sibling stream in production order
        if self.peer is not None and self.peer._buffer: self.peer.flush()
        self._buffer += text
        if "\n" in self._buffer:
            head, _, self._buffer = self._buffer.rpartition("\n")
            self._emit(head + "\n")
        return len(text)

    def writelines(self, lines)->int:
        total = 0
        for line in lines: total += self.write(line) or 0
        return total

    def flush(self):
        if self._buffer:
            text, self._buffer = self._buffer, ""
            self._emit(text)

    def isatty(self)->bool: return False

    def _emit(self, text:str):
        if self.sink is not None and text: self.sink.stream(self.name, text)


class SinkDisplayPublisher(DisplayPublisher):
    def __init__(self, shell=None):
        "Forward display/clear_output calls to the active sink."
        super().__init__(shell=shell)
        self.sink = None

    def publish(self, data, metadata=None, transient=None, update=False, **kwargs):
        if self.sink is None: return
        self.sink.display(data, metadata or {}, transient or {}, update=bool(update), buffers=kwargs.get("buffers"))

    def clear_output(self, wait:bool=False):
        if self.sink is not None: self.sink.clear_output(wait=bool(wait))


class CaptureDisplayHook(DisplayHook):
    def __init__(self, shell=None):
        "DisplayHook that keeps the last result instead of printing it."
        super().__init__(shell=shell)
        self.last = None
        self.last_metadata = None

    def write_output_prompt(self): pass

    def write_format_data(self, format_dict, md_dict=None):
        self.last = format_dict
        self.last_metadata = md_dict or {}

    def finish_displayhook(self): self._is_active = False


def _maybe_json(value):
    "Parse JSON strings to objects; return {} on decode errors."
    if isinstance(value, str):
        try: return json.loads(value)
        except json.JSONDecodeError: return {}
    return value


class _EngineShellApp(BaseIPythonApplication, InteractiveShellApp):
    "Minimal IPython app for loading config/extensions/startup."
    name = "ipython-kernel"

    def __init__(self, shell, **kwargs):
        super().__init__(**kwargs)
        self.shell = shell

    def init_shell(self):
        if self.shell: self.shell.configurables.append(self)


def _init_ipython_app(shell):
    "Load IPython config, extensions, and startup files once per process."
    global _STARTUP_DONE
    if _STARTUP_DONE: return
    app = _EngineShellApp(shell)
    app.init_profile_dir()
    app.init_config_files()
    app.load_config_file()
    app.init_path()
    app.init_shell()
    app.init_extensions()
    app.init_code()
    _STARTUP_DONE = True


def _raise_async_exception(thread_id:int, exc_type:type[BaseException])->bool:
    "Inject `exc_type` into a thread by id; returns success."
    import ctypes
    res = ctypes.pythonapi.PyThreadState_SetAsyncExc(ctypes.c_ulong(thread_id), ctypes.py_object(exc_type))
    if res == 0: return False
    if res > 1:
        ctypes.pythonapi.PyThreadState_SetAsyncExc(ctypes.c_ulong(thread_id), None)
        return False
    return True


class IPythonEngine(ExecutionEngine):
    "Execution engine backed by an IPython `InteractiveShell`."
    def __init__(self, *, user_ns:dict|None=None, use_singleton:bool=True, use_jedi:bool|None=None,
        experimental_completions:bool=True, load_startup:bool=True):
        from IPython.core import page

        os.environ.setdefault("MPLBACKEND", "module://matplotlib_inline.backend_inline")
        _IO_STATE.install()
        if use_singleton: self.shell = InteractiveShell.instance(user_ns=user_ns)
        else: self.shell = InteractiveShell(user_ns=user_ns)
        if use_jedi is not None: self.shell.Completer.use_jedi = use_jedi
        self._use_experimental_completions = bool(experimental_completions)
        self.shell.display_pub = SinkDisplayPublisher(shell=self.shell)
        self.shell.displayhook = CaptureDisplayHook(shell=self.shell)
        self.shell.display_trap.hook = self.shell.displayhook
        self._stdout, self._stderr = SinkStream("stdout"), SinkStream("stderr")
        self._stdout.peer, self._stderr.peer = self._stderr, self._stdout
        self._current_task = None
        self._loop = None
        self._exec_thread = None
        self._in_input = False
        if self.shell.display_page: hook = page.as_hook(page.display_page)
        else: hook = page.as_hook(self._payloadpage_page)
        self.shell.set_hook("show_in_pager", hook, 99)
        self.shell._last_traceback = None

        def _showtraceback(etype, evalue, stb): self.shell._last_traceback = stb
        def _enable_gui(gui=None): self.shell.active_eventloop = gui
        def _set_next_input(text:str, replace:bool=False):
            self.shell.payload_manager.write_payload(dict(source="set_next_input", text=text, replace=bool(replace)))

        self.shell._showtraceback = _showtraceback
        self.shell.enable_gui = _enable_gui
        self.shell.set_next_input = _set_next_input
        if load_startup: _init_ipython_app(self.shell)

    def _payloadpage_page(self, strg, start:int=0, screen_lines:int=0, pager_cmd=None):
        "Send pager output as a payload starting at `start`."
        data = strg if isinstance(strg, dict) else {"text/plain": strg}
        self.shell.payload_manager.write_payload(dict(source="page", data=data, start=max(0, start)))

    def _bind_sink(self, sink:OutputSink|None):
        self._stdout.sink = self._stderr.sink = sink
        self.shell.display_pub.sink = sink

    def _reset_capture_state(self):
        self.shell.displayhook.last = None
        self.shell.displayhook.last_metadata = None
        self.shell._last_traceback = None

    async def _run_cell(self, code:str, silent:bool, store_history:bool):
        "Run `code` using IPython's sync/async helpers."
        shell = self.shell
        try:
            transformed = shell.transform_cell(code)
            exc_tuple = None
        except Exception:
            transformed = code
            exc_tuple = sys.exc_info()
        should_run_async = shell.should_run_async(code, transformed_cell=transformed, preprocessing_exc_tuple=exc_tuple)
        if _asyncio_runner and shell.loop_runner is _asyncio_runner and should_run_async:
            res = None
            coro = shell.run_cell_async(code, store_history=store_history, silent=silent,
                transformed_cell=transformed, preprocessing_exc_tuple=exc_tuple)
            self._current_task = task = asyncio.create_task(coro)
            try: res = await task
            finally:
                self._current_task = None
                shell.events.trigger("post_execute")
                if not silent: shell.events.trigger("post_run_cell", res)
            return res
        return shell.run_cell(code, store_history=store_history, silent=silent)

    def _on_cancel(self, cancel:CancelToken):
        "Best-effort unwind of the running cell."
        task, loop, thread_id = self._current_task, self._loop, self._exec_thread
        if task is not None and loop is not None and not task.done():
            loop.call_soon_threadsafe(task.cancel)
            return
        if thread_id is None or self._in_input: return
        if thread_id == threading.main_thread().ident:
            # SIGINT's handler raises KeyboardInterrupt in the main thread, and also wakes blocking sleeps
            if cancel.reason == "signal": return
            if hasattr(signal, "pthread_kill"): signal.pthread_kill(thread_id, signal.SIGINT)
            else: _thread.interrupt_main()
            return
        _raise_async_exception(thread_id, KeyboardInterrupt)

    def handles_sigint(self)->bool:
        "True while a synchronous cell runs in the main thread."
        return self._exec_thread == threading.main_thread().ident and self._current_task is None and not self._in_input

    async def execute(self, request:ExecuteRequest, sink:OutputSink, cancel:CancelToken)->ExecuteOutcome:
        "Execute `request.code` in IPython, streaming output to `sink`."
        self._reset_capture_state()
        if request.store_history: self.shell.execution_count = request.execution_count
        self._loop = asyncio.get_running_loop()
        self._bind_sink(sink)

        def request_input(prompt:str, password:bool)->str:
            self._stdout.flush()
            self._stderr.flush()
            # a pending input is woken through the stdin channel, not by a signal
            self._in_input = True
            try: return sink.request_input(prompt, password)
            finally: self._in_input = False

        result, error = None, None
        try:
            self._exec_thread = threading.get_ident()
            cancel.add_callback(lambda: self._on_cancel(cancel))
            with _thread_local_io(self.shell, self._stdout, self._stderr, request_input, bool(request.allow_stdin)):
                result = await self._run_cell(request.code, silent=request.silent, store_history=request.store_history)
        except asyncio.CancelledError:
            if not cancel.cancelled: raise
            error = ExecutionError("KeyboardInterrupt", "", self.shell._last_traceback or [])
        finally:
            self._exec_thread = None
            self._stdout.flush()
            self._stderr.flush()
            self._bind_sink(None)

        payload = self._dedupe_set_next_input(self.shell.payload_manager.read_payload())
        self.shell.payload_manager.clear_payload()
        err = None if result is None else (result.error_in_exec or result.error_before_exec)
        if err is not None:
            ename = type(err).__name__
            if ename == "CancelledError" and cancel.cancelled: ename = "KeyboardInterrupt"
            error = ExecutionError(ename, str(err), self.shell._last_traceback or [])
        user_expressions = _maybe_json(request.user_expressions) or {}
        user_expr = self.shell.user_expressions(user_expressions) if error is None and user_expressions else {}
        return ExecuteOutcome(result=self.shell.displayhook.last, result_metadata=self.shell.displayhook.last_metadata or {},
            error=error, user_expressions=user_expr, payload=payload)

    def _dedupe_set_next_input(self, payload:list[dict])->list[dict]:
        "Deduplicate set_next_input payloads, keeping the newest."
        if not payload: return payload
        seen = False
        deduped = []
        for item in reversed(payload):
            if isinstance(item, dict) and item.get("source") == "set_next_input":
                if seen: continue
                seen = True
            deduped.append(item)
        return list(reversed(deduped))

    def complete(self, code:str, cursor_pos:int|None=None)->dict:
        "Return completion matches for `code` at `cursor_pos`."
        if cursor_pos is None: cursor_pos = len(code)
        if self._use_experimental_completions:
            with _provisionalcompleter():
                completions = list(_rectify_completions(code, self.shell.Completer.completions(code, cursor_pos)))
            if completions: cursor_start, cursor_end = completions[0].start, completions[0].end
            else: cursor_start = cursor_end = cursor_pos
            meta = [dict(start=c.start, end=c.end, text=c.text, type=c.type, signature=c.signature) for c in completions]
            return dict(matches=[c.text for c in completions], cursor_start=cursor_start, cursor_end=cursor_end,
                metadata={_EXPERIMENTAL_COMPLETIONS_KEY: meta}, status="ok")
        from IPython.utils.tokenutil import line_at_cursor

        line, offset = line_at_cursor(code, cursor_pos)
        txt, matches = self.shell.complete("", line, cursor_pos - offset)
        return dict(matches=matches, cursor_start=cursor_pos - len(txt), cursor_end=cursor_pos, metadata={}, status="ok")

    def inspect(self, code:str, cursor_pos:int|None=None, detail_level:int=0)->dict:
        "Return inspection data for the name under `cursor_pos`."
        if cursor_pos is None: cursor_pos = len(code)
        from IPython.utils.tokenutil import token_at_cursor

        name = token_at_cursor(code, cursor_pos)
        if not name: return dict(status="ok", found=False, data={}, metadata={})
        try: bundle = self.shell.object_inspect_mime(name, detail_level=detail_level)
        except KeyError: return dict(status="ok", found=False, data={}, metadata={})
        if not self.shell.enable_html_pager: bundle.pop("text/html", None)
        return dict(status="ok", found=True, data=bundle, metadata={})

    def is_complete(self, code:str)->dict:
        tm = getattr(self.shell, "input_transformer_manager", None) or self.shell.input_splitter
        status, indent_spaces = tm.check_complete(code)
        reply = {"status": status}
        if status == "incomplete": reply["indent"] = " " * (indent_spaces or 0)
        return reply

    def history(self, hist_access_type:str, output:bool=False, raw:bool=False, session:int=0, start:int=0,
        stop=None, n=None, pattern=None, unique:bool=False)->dict:
        "Return history entries based on `hist_access_type` query."
        hm = self.shell.history_manager
        if hist_access_type == "tail": hist = hm.get_tail(10 if n is None else n, raw=raw, output=output, include_latest=True)
        elif hist_access_type == "range": hist = hm.get_range(session, start, stop, raw=raw, output=output)
        elif hist_access_type == "search": hist = hm.search(pattern, raw=raw, output=output, n=n, unique=unique)
        else: hist = []
        return dict(status="ok", history=list(hist))

    def language_info(self)->dict:
        return dict(name="python", version=".".join(str(x) for x in sys.version_info[:3]), mimetype="text/x-python",
            file_extension=".py", pygments_lexer="ipython3", codemirror_mode={"name": "ipython", "version": 3},
            nbconvert_exporter="python")

    def banner(self)->str: return self.shell.banner
