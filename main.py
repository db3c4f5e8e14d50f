"""
sitestack - Main Entry Point

Declarative provisioning for S3 static websites and CloudFront.
"""

import sys

from sitestack.cli import main

if __name__ == "__main__":
    sys.exit(main())
