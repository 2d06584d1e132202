"""Local stand-in agent speaking the stream-json protocol, for integration tests.

Behaviour is selected with ``WORK_LOOP_ECHO_MODE``:

- ``ok``: stream some assistant text, then a successful result.
- ``agent_error``: emit a result event flagged as an execution error.
- ``overloaded``: emit a result flagged ``is_error`` for a transient API error.
- ``crash``: write a colored diagnostic to stderr and exit non-zero.
- ``sleep``: sleep ``WORK_LOOP_ECHO_SLEEP_SECONDS`` before answering.
- ``partial``: split lines across writes and omit the final newline.
- ``garbage``: interleave non-JSON output with events.
- ``nonzero_after_result``: emit a successful result, then exit 1.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path
from uuid import uuid4


def main(argv: list[str] | None = None) -> int:
    """Run one deterministic fake agent turn."""

    parser = argparse.ArgumentParser()
    parser.add_argument("-p", "--print", dest="prompt", required=True)
    parser.add_argument("--output-format", default="text")
    parser.add_argument("--resume", default=None)
    parser.add_argument("--model", default=None)
    args, _ = parser.parse_known_args(argv)

    raw_argv = list(sys.argv[1:] if argv is None else argv)
    args_file = os.getenv("WORK_LOOP_ECHO_ARGS_FILE")
    if args_file:
        Path(args_file).write_text(
            json.dumps(
                {
                    "argv": raw_argv,
                    "cwd": os.getcwd(),
                    "task_index": os.getenv("WORK_LOOP_TASK_INDEX"),
                    "pid": os.getpid(),
                },
            ),
            "utf-8",
        )

    mode = os.getenv("WORK_LOOP_ECHO_MODE", "ok")
    session_id = args.resume or f"echo-{uuid4().hex[:12]}"
    answer = f"Echo: {args.prompt.strip().splitlines()[0] if args.prompt.strip() else ''}"

    if mode == "crash":
        sys.stderr.write("\x1b[31mfatal: echo agent crashed\x1b[0m\n")
        sys.stderr.flush()
        return 3

    if mode == "sleep":
        time.sleep(float(os.getenv("WORK_LOOP_ECHO_SLEEP_SECONDS", "30")))

    _emit({"type": "system", "subtype": "init", "session_id": session_id, "model": args.model})

    if mode == "garbage":
        _write("this line is not json\n")
        _write("\x1b[33mwarning: colored noise\x1b[0m\n")

    _emit(
        {
            "type": "assistant",
            "message": {"content": [{"type": "text", "text": "Working on it."}]},
            "session_id": session_id,
        },
    )
    _emit({"type": "content_block_delta", "delta": {"type": "text_delta", "text": " Done."}})

    if mode == "agent_error":
        _emit(
            {
                "type": "result",
                "subtype": "error_during_execution",
                "is_error": True,
                "error": "task cannot be completed: missing credentials",
                "session_id": session_id,
            },
        )
        return 0

    if mode == "overloaded":
        _emit(
            {
                "type": "result",
                "subtype": "success",
                "is_error": True,
                "result": "API Error: 529 Overloaded. Please retry",
                "session_id": session_id,
            },
        )
        return 0

    result = {
        "type": "result",
        "subtype": "success",
        "is_error": False,
        "result": answer,
        "session_id": session_id,
        "usage": {"input_tokens": 12, "output_tokens": 7},
    }

    if mode == "partial":
        line = json.dumps(result)
        middle = len(line) // 2
        _write(line[:middle])
        time.sleep(0.2)
        _write(line[middle:])
        return 0

    _emit(result)
    if mode == "nonzero_after_result":
        return 1
    return 0


def _emit(event: dict[str, object]) -> None:
    _write(json.dumps(event) + "\n")


def _write(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
