"""
Pipewright Test Suite
=====================

Test organization mirrors the source code structure:
    tests/
    ├── test_core/          → Tests for pipewright.core (config, models, state, errors)
    ├── test_pipeline/      → Tests for pipewright.pipeline (document loader)
    ├── test_orchestration/ → Tests for pipewright.orchestration (graph, gate, engine, ...)
    ├── test_execution/     → Tests for pipewright.execution (executor, actions, deployment)
    ├── test_infrastructure/→ Tests for pipewright.infrastructure (artifacts, archives)
    ├── test_integrations/  → Tests for pipewright.integrations (commands, hosting, ...)
    ├── test_integration/   → End-to-end integration tests
    ├── test_facade.py      → Tests for the Pipewright facade
    ├── test_cli.py         → Tests for the command line interface
    └── conftest.py         → Shared pytest fixtures

Running Tests:
    pytest                          # Run all tests
    pytest tests/test_core/         # Run only core tests
    pytest tests/test_integration/  # Run only end-to-end tests
"""
