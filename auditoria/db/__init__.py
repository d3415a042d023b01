"""Database connection management and reference data seeds."""
