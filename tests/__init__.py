"""Test suite for mnemo."""
