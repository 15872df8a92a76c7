"""HTTP surface for the generation relay."""
