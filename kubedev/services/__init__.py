"""Services of the up pipeline: cluster access, builds, releases, sync and registries."""
