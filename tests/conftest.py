import sys, pytest
from pathlib import Path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path: sys.path.insert(0, str(ROOT))

from wirekernel.codec import MessageCodec
from .fakes import Recorder, ScriptedEngine

KEY = b"test-key"


@pytest.fixture
def codec(): return MessageCodec(key=KEY)


@pytest.fixture
def client_codec(): return MessageCodec(key=KEY, username="client")


@pytest.fixture
def recorder(): return Recorder()


@pytest.fixture
def engine(): return ScriptedEngine()
