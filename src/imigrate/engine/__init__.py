"""Execution engine: extraction, insertion, attempt ledger and job orchestration.

The orchestrator is the entry point; see ``imigrate.engine.orchestrator``.
"""
