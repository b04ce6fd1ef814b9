"""Phase pipeline for file-based coding tasks.

A task is a markdown file that moves through ``todo -> doing -> done``
directories.  One agent process claims a task with an exclusive lock file and
drives it through the configured phases, each a fresh invocation of an
external agent CLI.  Progress is checkpointed to disk after every transition
so a crashed process can be restarted and pick up at the first phase that has
not succeeded yet.

Every piece of shared state is a plain file under ``.doyaken/``: concurrent
agents coordinate only through exclusive file creation and atomic renames.
"""
