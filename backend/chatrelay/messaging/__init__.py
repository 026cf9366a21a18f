"""Message Pipeline: authorize, append, fan out."""
