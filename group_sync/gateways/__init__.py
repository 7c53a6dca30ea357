"""
Directory gateways.

The reconciliation engine reads and writes directories only through the
DirectoryGateway interface defined in base.
"""
