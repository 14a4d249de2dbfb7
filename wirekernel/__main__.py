"Host CLI: `wirekernel [run] -f CONNECTION_FILE` and `wirekernel install`."
import argparse
import sys
from pathlib import Path

from jupyter_client.kernelspec import install_kernel_spec

from .config import ConnectionConfig
from .errors import ConfigError
from .kernel import run_kernel

kernel_name = "wirekernel"
kernelspec_dir = Path(__file__).resolve().parents[1] / "share" / "jupyter" / "kernels" / kernel_name


def _run(argv:list[str])->int:
    parser = argparse.ArgumentParser(prog="wirekernel run", description="Serve one kernel on the ports in a connection file.")
    parser.add_argument("-f", "--connection-file", required=True)
    args = parser.parse_args(argv)
    # a bad descriptor is a usage error, reported before any socket is bound
    try: config = ConnectionConfig.from_file(args.connection_file)
    except ConfigError as err: parser.exit(2, f"{parser.prog}: error: {err}\n")
    return run_kernel(config)


def _install(argv:list[str])->int:
    parser = argparse.ArgumentParser(prog="wirekernel install", description="Install the wirekernel kernelspec.")
    scope = parser.add_mutually_exclusive_group()
    scope.add_argument("--user", action="store_true", help="Install into user Jupyter dir")
    scope.add_argument("--sys-prefix", action="store_const", dest="prefix", const=sys.prefix, help="Install into current env")
    scope.add_argument("--prefix", help="Install into a given prefix")
    args = parser.parse_args(argv)
    dest = install_kernel_spec(str(kernelspec_dir), kernel_name=kernel_name, user=args.user, prefix=args.prefix, replace=True)
    print(f"Installed kernelspec {kernel_name} in {dest}")
    return 0


commands = dict(run=_run, install=_install)


def main(argv:list[str]|None=None)->None:
    argv = sys.argv[1:] if argv is None else argv
    # bare `-f FILE` is what kernel.json launches
    if argv and argv[0] in commands: cmd, argv = commands[argv[0]], argv[1:]
    else: cmd = _run
    code = cmd(argv)
    if code: raise SystemExit(code)


if __name__ == "__main__":
    main()
