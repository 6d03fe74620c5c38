from __future__ import annotations

from mergeq import cli


if __name__ == "__main__":
    cli.main()
