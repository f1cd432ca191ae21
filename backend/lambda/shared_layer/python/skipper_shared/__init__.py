"""skipper_shared — Shared library for Skipper worker Lambdas and tooling.

Provides:
    - Worker definition contract and validation
    - Event routing against worker triggers
    - Worker manifest transport encoding (gzip + base64 + chunks)
    - GitHub App installation token minting with warm caches
    - Webhook envelope parsing and signature verification
    - CloudFormation stack deploy state machine
"""

__version__ = "1.0.0"
