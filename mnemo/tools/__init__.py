"""Agent-callable tools provided by mnemo."""
