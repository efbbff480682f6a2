"""Git, push verification, conflict resolution, and external collaborator adapters."""
