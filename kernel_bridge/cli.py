import argparse
import asyncio
import getpass
import json
import sys

from .client import KernelClient, check_python
from .config import settings
from .errors import KernelBridgeError
from .observability import configure_logging, get_logger

logger = get_logger(__name__)


def _print_output(output, parent_id=None):
    if output.get("output_type") == "stream":
        stream = sys.stderr if output.get("name") == "stderr" else sys.stdout
        stream.write(output.get("text", ""))
        stream.flush()
    elif output.get("output_type") in ("execute_result", "display_data"):
        text = output.get("data", {}).get("text/plain")
        if text:
            print(text)


async def _check_python(args) -> int:
    info = await check_python(args.python)
    print(json.dumps(info, indent=2))
    return 0


async def _run(args) -> int:
    client = KernelClient(executable=args.python)

    async def answer(request):
        loop = asyncio.get_running_loop()
        ask = getpass.getpass if request.password else input
        value = await loop.run_in_executor(None, ask, request.prompt)
        await client.supply_input(value, request.id)

    client.on("input_request", answer)
    client.on("output", _print_output)

    async with client:
        reply = await client.execute(args.code)
    print(json.dumps(reply, indent=2))
    return 0 if reply["status"] == "ok" else 1


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="kernel-bridge", description="Drive an IPython kernel from the command line"
    )
    parser.add_argument("--log-level", default=settings.LOG_LEVEL,
                        choices=["debug", "info", "warning", "error", "critical"],
                        help="Log verbosity (logs go to stderr)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    check = subparsers.add_parser("check-python", help="Describe a Python interpreter as JSON")
    check.add_argument("--python", default=None, help="Interpreter path or command (default: configured)")
    check.set_defaults(handler=_check_python)

    run = subparsers.add_parser("run", help="Execute code in a fresh kernel and print the reply")
    run.add_argument("code", help="Source code to execute")
    run.add_argument("--python", default=None, help="Interpreter that runs the kernel")
    run.set_defaults(handler=_run)

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        return asyncio.run(args.handler(args))
    except KernelBridgeError as e:
        logger.error("Command failed", command=args.command, error=str(e))
        print(f"error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130
