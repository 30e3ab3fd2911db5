"""Public reachability: DNS records, nginx sites and TLS certificates."""
