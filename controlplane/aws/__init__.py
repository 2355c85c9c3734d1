"""boto3 implementations of the collaborator interfaces."""
