"""Virtual hosting: Host dispatch, site lifecycle, proxying, health polling and watchers."""
