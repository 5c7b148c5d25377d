"""AWS collaborators: credentials, signed transport and S3 access."""
