"""app.integrations — External storage and service gateways.

Outbound calls to object storage go through a store in this package, never
via bare boto3 calls in services or blueprints.

Current gateways:
  attachment_store.LocalAttachmentStore — files under ATTACHMENT_DIR
  attachment_store.S3AttachmentStore — S3 / MinIO with presigned URLs
"""
