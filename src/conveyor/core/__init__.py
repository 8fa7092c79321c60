"""Core orchestration components for Conveyor."""
