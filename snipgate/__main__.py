"""
snipgate — conditional snippet execution gateway.
Entry point: python -m snipgate
"""

from snipgate.cli import cli

if __name__ == "__main__":
    cli()
