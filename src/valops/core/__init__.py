"""Foundation layer shared by every valops module: errors, logging, settings.

Nothing in ``valops.core`` touches the host; it only defines how failures
are described, how events are logged and how the host layout is configured.
"""
