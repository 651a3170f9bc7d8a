"""HTTP surface for the wallet agent."""
