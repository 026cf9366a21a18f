"""Media uploads backed by a blob store."""
