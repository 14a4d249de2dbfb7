"Interface between the kernel core and the code execution backend."
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Protocol
from .errors import ExecutionError
from .state import CancelToken


class OutputSink(Protocol):
    "Where an engine sends side effects while code runs; each call is published immediately."
    def stream(self, name:str, text:str): ...
    def display(self, data:dict, metadata:dict|None=None, transient:dict|None=None, update:bool=False, buffers=None): ...
    def clear_output(self, wait:bool=False): ...
    def request_input(self, prompt:str, password:bool=False)->str: ...


@dataclass
class ExecuteRequest:
    code:str
    execution_count:int
    silent:bool = False
    store_history:bool = True
    allow_stdin:bool = False
    user_expressions:dict = field(default_factory=dict)


@dataclass
class ExecuteOutcome:
    "Final result of one run: the last expression's mime bundle, or an error."
    result:dict|None = None
    result_metadata:dict = field(default_factory=dict)
    error:ExecutionError|None = None
    user_expressions:dict = field(default_factory=dict)
    payload:list = field(default_factory=list)

    @property
    def ok(self)->bool: return self.error is None


class ExecutionEngine(ABC):
    "A language backend; the kernel core drives it but never looks inside."
    @abstractmethod
    async def execute(self, request:ExecuteRequest, sink:OutputSink, cancel:CancelToken)->ExecuteOutcome:
        "Run `request.code`, streaming output to `sink`; must unwind promptly once `cancel` fires."

    @abstractmethod
    def complete(self, code:str, cursor_pos:int|None=None)->dict:
        "Return `matches`, `cursor_start`, `cursor_end` and `metadata`."

    @abstractmethod
    def inspect(self, code:str, cursor_pos:int|None=None, detail_level:int=0)->dict:
        "Return `found` and a mimetype->text `data` bundle."

    def is_complete(self, code:str)->dict: return dict(status="unknown")

    def history(self, hist_access_type:str, output:bool=False, raw:bool=False, **kwargs)->dict: return dict(status="ok", history=[])

    def language_info(self)->dict: return dict(name="unknown", version="", mimetype="text/plain", file_extension=".txt")

    def banner(self)->str: return ""

    def handles_sigint(self)->bool:
        "True when a SIGINT should raise `KeyboardInterrupt` in the main thread right now."
        return False
