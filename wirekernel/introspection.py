"Stateless shell request translators backed by the engine's introspection capabilities."
import logging, traceback
from .codec import Message, MsgType
from .engine import ExecutionEngine

log = logging.getLogger("wirekernel.introspection")


class RequestHandler:
    "Turn one request's content into reply content; never touches kernel state."
    msg_type:MsgType = None
    required:tuple = ()
    defaults:dict = {}

    def __init__(self, engine:ExecutionEngine): self.engine = engine

    @property
    def reply_type(self)->MsgType: return self.msg_type.reply_type

    def missing_fields(self, content:dict)->list[str]: return [key for key in self.required if key not in content]

    def error_reply(self, ename:str, evalue:str, tb:list|None=None)->dict:
        return dict(status="error", ename=ename, evalue=evalue, traceback=list(tb or [])) | self.defaults

    def __call__(self, msg:Message)->dict:
        "Reply content for `msg`; missing fields and engine failures become error replies."
        content = msg.content
        missing = self.missing_fields(content)
        if missing: return self.error_reply("MissingField", f"missing required fields: {', '.join(missing)}")
        try: reply = self.handle(content)
        except Exception as exc:
            log.warning("%s failed", self.msg_type, exc_info=exc)
            return self.error_reply(type(exc).__name__, str(exc), traceback.format_exception(type(exc), exc, exc.__traceback__))
        return dict(status="ok") | reply

    def handle(self, content:dict)->dict: raise NotImplementedError


def _cursor(content:dict)->int|None:
    pos = content.get("cursor_pos")
    return None if pos is None else int(pos)


class IntrospectionHandler(RequestHandler):
    "`inspect_request` -> `inspect_reply{found, data, metadata}`."
    msg_type = MsgType.INSPECT_REQUEST
    required = ("code", "cursor_pos")
    defaults = dict(found=False, data={}, metadata={})

    def handle(self, content:dict)->dict:
        reply = self.engine.inspect(content.get("code", ""), _cursor(content), int(content.get("detail_level") or 0))
        return dict(self.defaults) | reply


class CompletionHandler(RequestHandler):
    "`complete_request` -> `complete_reply{matches, cursor_start, cursor_end, metadata}`."
    msg_type = MsgType.COMPLETE_REQUEST
    required = ("code", "cursor_pos")
    defaults = dict(matches=[], cursor_start=0, cursor_end=0, metadata={})

    def handle(self, content:dict)->dict:
        code = content.get("code", "")
        pos = _cursor(content)
        reply = self.engine.complete(code, pos)
        end = len(code) if pos is None else pos
        return dict(matches=list(reply.get("matches", [])), cursor_start=reply.get("cursor_start", end),
            cursor_end=reply.get("cursor_end", end), metadata=reply.get("metadata", {}))


class IsCompleteHandler(RequestHandler):
    msg_type = MsgType.IS_COMPLETE_REQUEST
    required = ("code",)

    def handle(self, content:dict)->dict: return dict(self.engine.is_complete(content.get("code", "")))


class HistoryHandler(RequestHandler):
    msg_type = MsgType.HISTORY_REQUEST
    required = ("hist_access_type",)
    defaults = dict(history=[])

    def handle(self, content:dict)->dict:
        return self.engine.history(content.get("hist_access_type", ""), output=bool(content.get("output", False)),
            raw=bool(content.get("raw", False)), session=int(content.get("session", 0)), start=int(content.get("start", 0)),
            stop=content.get("stop"), n=content.get("n"), pattern=content.get("pattern"), unique=bool(content.get("unique", False)))


def default_handlers(engine:ExecutionEngine)->dict:
    "Map each introspection request type to its handler."
    return {cls.msg_type: cls(engine) for cls in (IntrospectionHandler, CompletionHandler, IsCompleteHandler, HistoryHandler)}
