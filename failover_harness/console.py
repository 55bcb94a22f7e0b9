"""Shared rich console for harness and engine output."""

from rich.console import Console

# Soft wrap keeps long lines intact in captured process logs
console = Console(soft_wrap=True)
