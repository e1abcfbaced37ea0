"""Demo data for trying Credit Monitor without a live credential."""
