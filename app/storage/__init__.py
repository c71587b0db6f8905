"""Storage adapters for objects that live outside the database."""
