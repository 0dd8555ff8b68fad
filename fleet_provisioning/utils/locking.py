import logging

from filelock import FileLock

# Suppress messages from filelock
logging.getLogger("filelock").setLevel(logging.WARNING)

# Backing store documents of a single experiment are shared by all steps of the experiment,
# so every read-modify-write of the documents needs to be locked.
StoreLock = FileLock
