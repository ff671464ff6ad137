"""
gembox: a private RubyGems repository.

Gems are uploaded through a small web UI, stored on disk, indexed into the
Marshal fragments ``gem`` and ``bundler`` fetch, and documented on demand.
"""

__version__ = "0.1.0"
