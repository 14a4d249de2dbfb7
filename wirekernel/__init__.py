from importlib.metadata import PackageNotFoundError, version
from .kernel import KernelSupervisor, run_kernel

try:
    __version__ = version("wirekernel")
except PackageNotFoundError:  # pragma: no cover - local editable without metadata
    __version__ = "0.0.0+local"

__all__ = ["KernelSupervisor", "run_kernel", "__version__"]
