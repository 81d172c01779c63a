"""
Stand-in for the conversational tool used by orchestrator tests.

Accepts the same flags as the real tool. Behaviour is chosen with the
FAKE_CLI_MODE environment variable:

    echo    print a JSON object describing the invocation (default)
    chunks  print FAKE_CLI_CHUNKS stream-json lines, FAKE_CLI_DELAY apart
    sleep   sleep for FAKE_CLI_DELAY seconds, then echo
    fail    write to stderr and exit with status 3
    text    print the message back as plain text

FAKE_CLI_STDERR, when set, is written to stderr first in every mode.
"""

import argparse
import json
import os
import sys
import time


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("-p", action="store_true")
    parser.add_argument("-r", dest="resume")
    parser.add_argument("--session-id")
    parser.add_argument("--output-format", default="text")
    parser.add_argument("--input-format", default="text")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--model")
    args, extra = parser.parse_known_args()

    mode = os.environ.get("FAKE_CLI_MODE", "echo")
    delay = float(os.environ.get("FAKE_CLI_DELAY", "0.1"))
    message = sys.stdin.read()
    session_id = args.resume or args.session_id

    if os.environ.get("FAKE_CLI_STDERR"):
        sys.stderr.write(os.environ["FAKE_CLI_STDERR"].replace("{cwd}", os.getcwd()) + "\n")
        sys.stderr.flush()

    if mode == "fail":
        sys.stderr.write(f"fatal: could not open {os.getcwd()}\n")
        sys.exit(3)

    if mode == "sleep":
        time.sleep(delay)

    if mode == "chunks":
        count = int(os.environ.get("FAKE_CLI_CHUNKS", "3"))
        for index in range(count):
            sys.stdout.write(json.dumps({"type": "chunk", "index": index, "session_id": session_id}) + "\n")
            sys.stdout.flush()
            time.sleep(delay)
        return

    if mode == "text":
        sys.stdout.write(message)
        return

    sys.stdout.write(json.dumps({
        "session_id": session_id,
        "resumed": args.resume is not None,
        "message": message,
        "output_format": args.output_format,
        "input_format": args.input_format,
        "verbose": args.verbose,
        "model": args.model,
        "extra": extra,
        "cwd": os.getcwd(),
    }))


if __name__ == "__main__":
    main()
