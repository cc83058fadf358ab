"""Revenue-operations sync service package."""
