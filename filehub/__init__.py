"""filehub: request governance and log collection for the file-sharing app."""
