"Run one execute_request end to end: status bracketing, IOPub side effects and the shell reply."
import logging, traceback
from typing import Callable
from fastcore.basics import store_attr
from .codec import Message, MsgType
from .engine import ExecuteRequest, ExecutionEngine
from .errors import ExecutionError
from .state import CancelToken, KernelState
from .debug import dbg

log = logging.getLogger("wirekernel.dispatcher")
execute_required = ("code",)


class IOPubSink:
    "OutputSink publishing each engine side effect on IOPub as soon as it happens."
    def __init__(self, publish:Callable, parent:Message, input_fn:Callable|None=None,
        cancel:CancelToken|None=None, muted:bool=False):
        store_attr()

    def stream(self, name:str, text:str):
        if self.muted or not text: return
        self.publish(MsgType.STREAM, dict(name=name, text=text), self.parent)

    def display(self, data:dict, metadata:dict|None=None, transient:dict|None=None, update:bool=False, buffers=None):
        if self.muted: return
        msg_type = MsgType.UPDATE_DISPLAY_DATA if update else MsgType.DISPLAY_DATA
        self.publish(msg_type, dict(data=data, metadata=metadata or {}, transient=transient or {}), self.parent, buffers=buffers)

    def clear_output(self, wait:bool=False):
        if not self.muted: self.publish(MsgType.CLEAR_OUTPUT, dict(wait=bool(wait)), self.parent)

    def request_input(self, prompt:str, password:bool=False)->str:
        "Block this execution on an `input_reply`; an interrupt raises `KeyboardInterrupt`."
        if self.cancel is not None and self.cancel.cancelled: raise KeyboardInterrupt
        if self.input_fn is None: raise RuntimeError("no stdin channel available")
        return self.input_fn(prompt, password, self.parent)


def _exc_error(exc:BaseException)->ExecutionError:
    return ExecutionError.from_exception(exc, traceback.format_exception(type(exc), exc, exc.__traceback__))


class ExecutionDispatcher:
    """Drive the engine for one `execute_request` at a time.

    `publish(msg_type, content, parent, metadata=None, buffers=None)` queues an IOPub message,
    `reply(parent, msg_type, content)` queues a shell reply, and `request_input(prompt, password, parent)`
    blocks on the stdin channel. `interrupt_input()` wakes any waiting input request."""
    def __init__(self, state:KernelState, engine:ExecutionEngine, publish:Callable, reply:Callable,
        request_input:Callable|None=None, interrupt_input:Callable|None=None):
        store_attr()

    def _publish_error(self, msg:Message, error:ExecutionError): self.publish(MsgType.ERROR, error.to_content(), msg)

    def _error_reply(self, error:ExecutionError, execution_count:int)->dict:
        return dict(status="error", execution_count=execution_count, user_expressions={}, payload=[]) | error.to_content()

    def reject(self, msg:Message, error:ExecutionError)->dict:
        "Answer without running: busy, error, reply, idle; the counter is untouched."
        self.state.set_busy(msg)
        try:
            self._publish_error(msg, error)
            reply = self._error_reply(error, self.state.execution_count)
            self.reply(msg, MsgType.EXECUTE_REPLY, reply)
        finally: self.state.set_idle(msg)
        return reply

    def abort(self, msg:Message)->dict:
        "Answer a queued request with `status: aborted` after an earlier failure."
        self.state.set_busy(msg)
        try:
            reply = dict(status="aborted", execution_count=self.state.execution_count, user_expressions={}, payload=[])
            self.reply(msg, MsgType.EXECUTE_REPLY, reply)
        finally: self.state.set_idle(msg)
        return reply

    async def execute(self, msg:Message)->dict:
        "Run `msg` through the engine and return the `execute_reply` content that was sent."
        content = msg.content
        missing = [key for key in execute_required if key not in content]
        if missing: return self.reject(msg, ExecutionError("MissingField", f"missing required fields: {', '.join(missing)}"))
        code = content["code"]
        if not isinstance(code, str): return self.reject(msg, ExecutionError("InvalidField", f"code must be a string, not {type(code).__name__}"))
        silent = bool(content.get("silent", False))
        store_history = bool(content.get("store_history", True)) and not silent
        pending = self.state.begin_execution(msg, store_history)
        count = pending.execution_count
        sent_reply = sent_error = False
        reply = None
        try:
            self.state.set_busy(msg)
            dbg(f"HANDLE_EXEC id={msg.short_id()} count={count} code={code[:30]!r}")
            if not silent: self.publish(MsgType.EXECUTE_INPUT, dict(code=code, execution_count=count), msg)
            if self.interrupt_input is not None: pending.cancel.add_callback(self.interrupt_input)
            request = ExecuteRequest(code=code, execution_count=count, silent=silent, store_history=store_history,
                allow_stdin=bool(content.get("allow_stdin", False)), user_expressions=content.get("user_expressions") or {})
            sink = IOPubSink(self.publish, msg, input_fn=self.request_input, cancel=pending.cancel, muted=silent)
            if pending.interrupt_requested: raise KeyboardInterrupt
            outcome = await self.engine.execute(request, sink, pending.cancel)
            error = outcome.error
            if error is not None:
                self._publish_error(msg, error)
                sent_error = True
            elif not silent and outcome.result is not None:
                self.publish(MsgType.EXECUTE_RESULT, dict(execution_count=count, data=outcome.result,
                    metadata=outcome.result_metadata), msg)
            reply = dict(status="ok", execution_count=count, user_expressions=outcome.user_expressions, payload=outcome.payload)
            if error is not None: reply = self._error_reply(error, count)
            self.reply(msg, MsgType.EXECUTE_REPLY, reply)
            sent_reply = True
        except (KeyboardInterrupt, Exception) as exc:
            if not isinstance(exc, KeyboardInterrupt): log.exception("engine failed on %s", msg.short_id())
            error = _exc_error(exc)
            if not sent_error: self._publish_error(msg, error)
            if not sent_reply:
                reply = self._error_reply(error, count)
                self.reply(msg, MsgType.EXECUTE_REPLY, reply)
        finally:
            self.state.finish_execution(pending)
            self.state.set_idle(msg)
        return reply