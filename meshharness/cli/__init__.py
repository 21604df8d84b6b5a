"""Main CLI application module.

Provides the `meshharness-cli` entry point:

- up: install the mesh into a test namespace
- down: tear a test namespace down again
- render: generate instance manifests only
- ingress: print the ingress URL
- pods: list application pods by app
"""

from .commands import app


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
