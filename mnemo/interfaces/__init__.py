"""External interfaces for mnemo."""
