"""
Document lifecycle: revisions, issuance, locked artifacts, snapshots, remediation lineage.
"""
