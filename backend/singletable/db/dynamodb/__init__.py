"""Shared DynamoDB utilities.

This package centralizes:
- boto3 client/resource configuration
- table-scoped BatchGetItem / BatchWriteItem calls
- typed, expressive errors for store failures

"""
