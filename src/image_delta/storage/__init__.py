"""
Image transports: registry (docker) and OCI archive.
"""
