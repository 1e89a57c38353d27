"""
Test Services Package
Tests for the services module (dose ledger, stock, adherence, profile)
"""
