"""Local stand-in for a provider CLI.

Reads the prompt from stdin and answers with codex-style JSONL events. Point a
provider at it with, for example::

    CLI_RELAY_CODEX_COMMAND="python -m cli_relay.orchestrator.backend.echo_agent --model {model}"

Behaviour is steered through environment variables:

``CLI_RELAY_ECHO_FAIL_MODELS``
    Comma-separated models that fail instead of answering.
``CLI_RELAY_ECHO_FAILURE``
    How they fail: ``model_not_found`` (default), ``rate_limit`` or ``crash``.
``CLI_RELAY_ECHO_FAIL_EXIT_CODE``
    Exit code of a failing model, overriding the one implied by the failure kind.
``CLI_RELAY_ECHO_SLEEP_SECONDS``
    Delay before answering, to exercise timeouts and kills.
``CLI_RELAY_ECHO_CHILD_PID_FILE``
    Start a long-sleeping child in the agent's process group first and write
    its pid to this file.
"""

from __future__ import annotations

import argparse
import json
import os
import subprocess
import sys
import time


def _emit(event: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(event) + "\n")
    sys.stdout.flush()


def _fail(kind: str, model: str) -> int:
    if kind == "rate_limit":
        _emit({"type": "error", "message": "429 Too Many Requests: rate limit exceeded"})
        return 1
    if kind == "crash":
        sys.stderr.write(f"fatal: agent crashed while running {model}\n")
        return 2
    _emit({"type": "error", "message": f"model_not_found: The model {model} does not exist"})
    return 1


def _start_child(pid_file: str) -> None:
    child = subprocess.Popen(  # noqa: S603
        [sys.executable, "-c", "import time; time.sleep(120)"],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    with open(pid_file, "w", encoding="utf-8") as handle:
        handle.write(str(child.pid))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="echo-agent")
    parser.add_argument("--model", default="echo")
    args = parser.parse_args(argv)

    prompt = sys.stdin.read()

    child_pid_file = os.getenv("CLI_RELAY_ECHO_CHILD_PID_FILE")
    if child_pid_file:
        _start_child(child_pid_file)

    delay = float(os.getenv("CLI_RELAY_ECHO_SLEEP_SECONDS", "0") or 0)
    if delay > 0:
        time.sleep(delay)

    failing = {
        name.strip()
        for name in os.getenv("CLI_RELAY_ECHO_FAIL_MODELS", "").split(",")
        if name.strip()
    }
    if args.model in failing:
        code = _fail(os.getenv("CLI_RELAY_ECHO_FAILURE", "model_not_found"), args.model)
        override = os.getenv("CLI_RELAY_ECHO_FAIL_EXIT_CODE")
        return int(override) if override else code

    last_line = next((line for line in reversed(prompt.splitlines()) if line.strip()), "")
    sys.stdout.write("progress: thinking\n")
    _emit({"type": "item.completed", "item": {"type": "agent_message", "text": "Working on it."}})
    _emit(
        {
            "type": "item.completed",
            "item": {"type": "agent_message", "text": f"[{args.model}] {last_line}"},
        },
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
