"""Home-service transaction engine: lifecycle, pricing, escrow, anti-fraud and ratings."""
