"""
metalkube/cli/metalkubectl.py

Console entry point. `metalkubectl cluster provision ...` runs the
metalkube.cli.cluster tool in-process with the remaining arguments.
"""

import importlib
import sys

TOOLS = {
    "cluster": "metalkube.cli.cluster",
}


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in TOOLS:
        print(f"Usage: metalkubectl {{{','.join(TOOLS)}}} [args...]", file=sys.stderr)
        sys.exit(1)

    tool = sys.argv[1]
    module = importlib.import_module(TOOLS[tool])
    sys.argv = [f"metalkubectl {tool}"] + sys.argv[2:]
    module.main()


if __name__ == "__main__":
    main()
