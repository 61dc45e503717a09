"""
PHI Audit Tests

Running Tests:
    # Install test dependencies
    pip install -e ".[test]"

    # Run all tests
    pytest -v

    # Run one layer
    pytest tests/unit -v
    pytest tests/integration -v

Test Coverage:
    - Audit models, crypto provider and store
    - Ingestion, outbox, query, report and monitor
    - Session guard, registry and verification
    - HTTP surface (audit, sessions, verify, health)
"""
