"""Memory components."""
