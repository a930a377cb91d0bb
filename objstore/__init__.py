"""objstore/ -- Artifact store (S3) client and snapshot syncer."""
