"""
On-disk formats of a RubyGems source.

This package is responsible for:
* Reading and writing Ruby Marshal 4.8 data.
* Reading ``.gem`` archives (gemspec metadata and data files).
* Encoding and decoding the spec fragments and quick gemspecs.
* Loading the version collection from the current index.
"""
