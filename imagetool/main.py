#!/usr/bin/env python3
"""
Main entry point for imagetool.
"""
from .cli.build_cli import cli


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
