"""
Test Actions Package
Tests for the actions module (reminder scheduler, dispatcher, alert engine)
"""
