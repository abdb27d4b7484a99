import asyncio
import sys
from pathlib import Path

import yaml

from crisp.crisp_config import load_config
from crisp.crisp_parser import open_depth
from crisp.crisp_runtime import ScriptRunner

USAGE = "usage: crisp.py [--config cfg.yaml] [script]"


# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)


def parse_args(argv):
    """Returns ``(config_path, script_path)`` from the command line."""
    config_path = None
    script = None
    args = iter(argv)
    for arg in args:
        if arg == "--config":
            config_path = next(args, None)
            if config_path is None:
                raise SystemExit(USAGE)
        elif arg.startswith("--config="):
            config_path = arg.split("=", 1)[1]
        elif arg.startswith("-"):
            raise SystemExit(USAGE)
        else:
            script = arg
    return config_path, script


def print_result(result):
    for effect in result.side_effects:
        if effect.get('topics') == ['stdout']:
            print(effect.get('message', ''))
    if result.actions:
        print(yaml.safe_dump([a.to_dict() for a in result.actions], sort_keys=False).rstrip())


async def run_script_file(file_path: str, runner: ScriptRunner):
    """Run a CRISP script file non-interactively and exit with appropriate status."""
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    result = await runner.handle_script(source)
    if result.status == 'error':
        for effect in result.side_effects:
            if effect.get('topics') == ['stdout']:
                print(effect.get('message', ''))
        print(result.format_error(), file=sys.stderr)
        raise SystemExit(1)
    print_result(result)


async def main(argv=None):
    """Run a script file when provided, otherwise start the interactive REPL."""
    config_path, script = parse_args(sys.argv[1:] if argv is None else argv)
    try:
        config = load_config(config_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        raise SystemExit(2)

    runner = ScriptRunner(config=config)
    if script is not None:
        await run_script_file(script, runner)
        return

    print("CRISP REPL v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")

    buffer = []
    while True:
        try:
            raw = await ainput(".. " if buffer else ">> ")
            if raw == "":
                raise EOFError
            line = raw.rstrip("\n")

            if not buffer:
                if not line.strip():
                    continue
                if line.strip() == "exit":
                    break

            # Keep reading until every block is closed
            buffer.append(line)
            source = "\n".join(buffer)
            if open_depth(source):
                continue
            buffer = []

            result = await runner.handle_script(source)
            if result.status == 'error':
                print(result.format_error(), file=sys.stderr)
                continue
            print_result(result)

        except EOFError:
            print("\nExiting.")
            break
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")
