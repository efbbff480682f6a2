"""Domain records, error taxonomy, lifecycle events and collaborator protocols."""
