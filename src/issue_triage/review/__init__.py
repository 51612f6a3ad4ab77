"""Review records: artifact parsing, the metadata store and remote sync."""
