import base64
import hashlib
import hmac

import boto3
import jwt
from botocore.exceptions import ClientError

from biblesyncd import logging
from biblesyncd.exceptions import (
    CognitoInvalidCredentialsException,
    CognitoPasswordResetRequiredException,
    CognitoUserNotConfirmedException,
)
from biblesyncd.users.simple_manager import SimpleUserManager

logger = logging.get_logger(__name__)

_INVALID_CREDENTIAL_CODES = (
    "NotAuthorizedException",
    "UserNotFoundException",
    "InvalidParameterException",
    "TooManyRequestsException",
)


class CognitoUserManager(SimpleUserManager):
    """Authenticates users against AWS Cognito User Pool."""

    def __init__(self, config, cognito_client=None):
        self.user_pool_id = config.get('cognito_user_pool_id')
        self.client_id = config.get('cognito_client_id')
        self.client_secret = config.get('cognito_client_secret')
        self.region = config.get('cognito_region', 'us-east-1')

        if not self.user_pool_id:
            raise ValueError("cognito_user_pool_id is required")
        if not self.client_id:
            raise ValueError("cognito_client_id is required")

        self.cognito_client = cognito_client or boto3.client('cognito-idp', region_name=self.region)

        # Maps the login identifier (often an email address) to the Cognito
        # user's permanent ``sub`` so sync rows survive email changes
        self.uuid_cache = {}

        logger.info(f"Initialized CognitoUserManager for user pool: {self.user_pool_id}")

    def authenticate(self, username, password):
        """
        Authenticate user against AWS Cognito User Pool.

        Returns True on success, False on an unsupported challenge. Raises a
        Cognito*Exception when Cognito rejects the credentials.
        """
        auth_params = {
            'USERNAME': username,
            'PASSWORD': password
        }
        if self.client_secret:
            auth_params['SECRET_HASH'] = self._calculate_secret_hash(username)

        try:
            response = self.cognito_client.initiate_auth(
                ClientId=self.client_id,
                AuthFlow='USER_PASSWORD_AUTH',
                AuthParameters=auth_params
            )
        except ClientError as e:
            error_code = e.response['Error']['Code']
            error_message = e.response['Error']['Message']
            logger.info(f"Authentication failed for user: {username} - {error_code}")
            if error_code in _INVALID_CREDENTIAL_CODES:
                raise CognitoInvalidCredentialsException(error_message, error_code) from e
            if error_code == 'UserNotConfirmedException':
                raise CognitoUserNotConfirmedException(error_message, error_code) from e
            if error_code == 'PasswordResetRequiredException':
                raise CognitoPasswordResetRequiredException(error_message, error_code) from e
            raise

        if 'AuthenticationResult' in response:
            id_token = response['AuthenticationResult'].get('IdToken')
            if id_token:
                try:
                    # Signature already checked by Cognito over TLS
                    decoded_token = jwt.decode(id_token, options={"verify_signature": False})
                    if decoded_token.get('sub'):
                        self.uuid_cache[username] = decoded_token['sub']
                except jwt.InvalidTokenError as e:
                    logger.warning(f"Failed to decode ID token for {username}: {e}")
            logger.info(f"Authentication succeeded for user: {username}")
            return True

        if 'ChallengeName' in response:
            # MFA and forced password changes are not supported by the sync server
            logger.warning(f"Authentication challenge for user {username}: {response['ChallengeName']}")
        return False

    def _calculate_secret_hash(self, username):
        """Calculate secret hash for Cognito client secret."""
        message = username + self.client_id
        secret_hash = hmac.new(
            self.client_secret.encode('utf-8'),
            message.encode('utf-8'),
            hashlib.sha256
        ).digest()
        return base64.b64encode(secret_hash).decode()

    def user_id(self, username):
        return self.uuid_cache.get(username, username)
