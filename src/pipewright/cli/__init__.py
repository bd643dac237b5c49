"""Typer sub-applications for the pipewright command."""
