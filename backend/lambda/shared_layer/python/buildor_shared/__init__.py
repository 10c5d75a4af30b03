"""buildor_shared: shared code for the Buildor deployment Lambdas.

Provides:
    - Cognito JWT authentication (cookie-based) and internal key auth
    - Lazy boto3 client singletons (DynamoDB, CodeBuild, SSM)
    - HTTP response helpers with CORS and the error envelope
    - DynamoDB serialization and structured observability logging
    - Deployment status model, project/deployment store, build trigger
"""

__version__ = "1.0.0"
