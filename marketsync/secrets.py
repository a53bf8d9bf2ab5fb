"""AWS Secrets Manager overlay for SP-API credentials."""

import json
from typing import Any, Dict, Optional
import boto3
from botocore.exceptions import ClientError
import structlog

from marketsync.config import CREDENTIAL_ENV_KEYS, settings
from marketsync.errors import ConfigurationFault

logger = structlog.get_logger(__name__)


class SecretsManager:
    """Reads credential bundles stored as JSON secrets."""

    def __init__(self, region_name: Optional[str] = None, client: Any = None):
        self.region_name = region_name or settings.secrets_region
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("secretsmanager", region_name=self.region_name)
        return self._client

    def get_secret(self, secret_arn: str) -> Dict[str, Any]:
        """
        Retrieve a JSON secret.

        Args:
            secret_arn: ARN of the secret

        Returns:
            Secret data as dict

        Raises:
            ConfigurationFault: If the secret is missing, denied or not JSON
        """
        try:
            logger.info("retrieving_secret", arn=secret_arn)
            response = self.client.get_secret_value(SecretId=secret_arn)
        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            logger.error("secret_retrieval_failed", arn=secret_arn, error_code=error_code)

            if error_code == "ResourceNotFoundException":
                raise ConfigurationFault([secret_arn], f"Secret not found: {secret_arn}")
            elif error_code == "AccessDeniedException":
                raise ConfigurationFault([secret_arn], f"Access denied to secret: {secret_arn}")
            raise

        secret_string = response.get("SecretString")
        if not secret_string:
            raise ConfigurationFault([secret_arn], f"Secret {secret_arn} has no string payload")

        try:
            secret_data = json.loads(secret_string)
        except json.JSONDecodeError:
            raise ConfigurationFault([secret_arn], f"Secret {secret_arn} is not valid JSON")

        logger.info("secret_retrieved", arn=secret_arn)
        return secret_data

    def get_spapi_credentials(self, secret_arn: str) -> Dict[str, str]:
        """
        Get SP-API credential values from a secret.

        Keys may be given either as credential field names
        (``lwa_client_id``) or as environment keys (``AMZ_LWA_CLIENT_ID``).
        """
        secret_data = self.get_secret(secret_arn)
        credentials = {}
        for field_name, env_key in CREDENTIAL_ENV_KEYS.items():
            value = secret_data.get(field_name) or secret_data.get(env_key)
            if value:
                credentials[field_name] = value
        return credentials


# Global secrets manager instance
secrets_manager = SecretsManager()
