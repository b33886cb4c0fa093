"""Media, mount, download and external-tool layer."""
