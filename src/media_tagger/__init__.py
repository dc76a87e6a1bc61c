"""Media Tagger: AI-generated sidecar metadata for media stored in an S3-compatible bucket."""

__version__ = "0.1.0"
