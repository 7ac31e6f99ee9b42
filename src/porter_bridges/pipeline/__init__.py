"""Work-item lifecycle: persistent state, phase runner and phase validation.

Every item is tracked by a stable key through discovered -> collected ->
distilled -> packaged -> bundled, with ``failed`` as the side exit that a
later retry pass can return from. The state file is the only source of truth;
resuming a run reads it back and continues from whatever status each item is
actually in.
"""
