"""
Module entry point for: python -m intake

Allows running the pipeline directly as a module:
    python -m intake ingest <project_id> <files...>
    python -m intake run <project_id>
    python -m intake serve [options]
"""

from .cli import cli


def main():
    cli()


if __name__ == "__main__":
    main()
