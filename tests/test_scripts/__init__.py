"""
Test Scripts Package
Tests for the periodic engine job
"""
