"""
yamisskey-doctor: health checks, backup restore/verify and database repair
for a Misskey instance.
"""
__version__ = "0.1.0"
