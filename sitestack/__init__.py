"""
sitestack - declarative provisioning for S3 static websites.

Plans and applies a YAML desired-state document (bucket, website hosting,
bucket policy, optional CloudFront distribution) against AWS, keeping a
local state snapshot of what it manages.
"""

__version__ = "0.1.0"
