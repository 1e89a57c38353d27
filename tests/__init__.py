"""
DoseKeeper Test Suite
=====================

This package contains all tests for the DoseKeeper scheduling and forecasting engine.

Test Structure:
- test_services/: Dose ledger, stock, adherence and profile services
- test_actions/: Reminder scheduler, notification dispatcher and alert engine
- test_api/: API endpoint tests for FastAPI routes
- conftest.py: Shared pytest fixtures

Running Tests:
    # Run all tests
    pytest

    # Run specific test module
    pytest tests/test_actions/

    # Run only marked tests
    pytest -m "unit"
    pytest -m "api"
"""
