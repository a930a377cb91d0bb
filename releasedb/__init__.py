"""releasedb/ -- Durable store for snapshots, releases, and issues.

Layer rule: releasedb/ imports only core/ plus third-party libraries.
Both syncers and the API read and write through ReleaseStore.
"""
