"""Subcommands of the ``docbatch`` CLI; each module exposes ``register`` and handlers."""
