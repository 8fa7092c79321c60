"""Conveyor command-line interface."""
