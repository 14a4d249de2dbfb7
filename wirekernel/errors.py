"Exception taxonomy shared by the codec, channels and dispatcher."


class KernelError(Exception): pass


class ConfigError(KernelError, ValueError): pass


class ProtocolError(KernelError, ValueError):
    "Malformed envelope, bad JSON, unknown msg_type or signature mismatch; the message is dropped."
    def __init__(self, reason:str, frames:int|None=None):
        super().__init__(reason)
        self.reason, self.frames = reason, frames


class TransportError(KernelError):
    "Socket-level failure that ends a channel's loop."
    def __init__(self, channel:str, cause:BaseException|None=None):
        super().__init__(f"{channel} channel failed: {cause}" if cause else f"{channel} channel failed")
        self.channel, self.cause = channel, cause


class ExecutionError(KernelError):
    "Executed code failed; carries the fields of an IOPub `error` message."
    def __init__(self, ename:str, evalue:str, traceback:list[str]|None=None):
        super().__init__(f"{ename}: {evalue}")
        self.ename, self.evalue = ename, evalue
        self.traceback = list(traceback or [])

    @classmethod
    def from_exception(cls, exc:BaseException, traceback:list[str]|None=None)->"ExecutionError":
        return cls(type(exc).__name__, str(exc), traceback)

    def to_content(self)->dict: return dict(ename=self.ename, evalue=self.evalue, traceback=list(self.traceback))
