"""Entry point for ``python -m llm_runtime`` execution."""

from .cli import cli


def main() -> None:
    """Entry point for the llm-runtime CLI."""
    cli()


if __name__ == "__main__":
    main()
