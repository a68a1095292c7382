"""Unix socket servers and clients for the gh and clipboard proxies."""
