"""Blob cache CLI interface."""

from blobsync.cli import cli

if __name__ == "__main__":
    cli(prog_name="blobsync")
