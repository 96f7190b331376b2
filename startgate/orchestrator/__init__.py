"""Orchestration — dependency graph, run engine and system snapshot."""
