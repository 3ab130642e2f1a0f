"""Device transports: install, shell, instrumentation and file transfer."""
