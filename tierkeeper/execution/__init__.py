"""Order mutation, fill processing and expiry enforcement."""
