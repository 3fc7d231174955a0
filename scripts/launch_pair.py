"""Launch a local signaling relay plus two callers for a test call."""
from __future__ import annotations

import argparse
import atexit
import signal
import subprocess
import sys
import time
from pathlib import Path

ProcessRecord = tuple[str, subprocess.Popen]

PROCESSES: list[ProcessRecord] = []


def _register_process(name: str, proc: subprocess.Popen) -> None:
    PROCESSES.append((name, proc))


def _terminate_process(proc: subprocess.Popen, timeout: float) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()


def _cleanup() -> None:
    while PROCESSES:
        name, proc = PROCESSES.pop()
        try:
            _terminate_process(proc, timeout=5.0)
        except OSError as exc:
            print(f"Failed to stop {name}: {exc}", file=sys.stderr)


def _handle_signal(signum: int, frame: object) -> None:  # pragma: no cover - signal runtime
    _cleanup()
    sys.exit(0)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Launch the relay and two callers")
    parser.add_argument("--python", default=sys.executable, help="Python interpreter to use for subprocesses")
    parser.add_argument("--relay-host", default="127.0.0.1")
    parser.add_argument("--relay-port", type=int, default=3000)
    parser.add_argument("--status-port", type=int, default=3001)
    parser.add_argument("--callers", type=int, default=2, help="Number of callers; the relay expects two")
    parser.add_argument("--ui-host", default="127.0.0.1", help="Host binding for each caller UI server")
    parser.add_argument("--ui-start-port", type=int, default=8100, help="UI port of the first caller")
    parser.add_argument("--caller-delay", type=float, default=0.5, help="Delay between starting callers")
    parser.add_argument("--relay-startup-delay", type=float, default=1.0, help="Delay before launching callers")
    parser.add_argument("--lan", action="store_true", help="Skip public STUN servers")
    parser.add_argument("--workspace", default=str(Path(__file__).resolve().parent.parent), help="Working directory")
    return parser.parse_args(argv)


def build_commands(args: argparse.Namespace) -> list[tuple[str, list[str]]]:
    commands: list[tuple[str, list[str]]] = [
        (
            "relay",
            [
                args.python,
                "-m",
                "relay",
                "--host",
                args.relay_host,
                "--port",
                str(args.relay_port),
                "--status-port",
                str(args.status_port),
            ],
        )
    ]
    for index in range(args.callers):
        ui_port = args.ui_start_port + index
        cmd = [
            args.python,
            "-m",
            "caller",
            args.relay_host,
            "--port",
            str(args.relay_port),
            "--ui-host",
            args.ui_host,
            "--ui-port",
            str(ui_port),
        ]
        if args.lan:
            cmd.append("--no-ice-servers")
        commands.append((f"caller-{ui_port}", cmd))
    return commands


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    atexit.register(_cleanup)

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handle_signal)

    if args.callers > 2:
        print("Warning: the relay forwards every message to all other callers", file=sys.stderr)

    commands = build_commands(args)
    for index, (name, cmd) in enumerate(commands):
        print(f"Starting {name}: {' '.join(cmd)}")
        _register_process(name, subprocess.Popen(cmd, cwd=args.workspace))
        time.sleep(max(args.relay_startup_delay if index == 0 else args.caller_delay, 0.0))

    print("All processes started. Press Ctrl+C to stop everything.")

    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        _cleanup()


if __name__ == "__main__":
    main()
