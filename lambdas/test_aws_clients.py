#!/usr/bin/env python3
"""Unit tests for the AWS client wrapper and error translation."""

import logging
from unittest.mock import MagicMock, Mock, patch

import pytest
from aws_clients import AWSClients, setup_logging, translate_client_error
from botocore.exceptions import ClientError, EndpointConnectionError
from remediation_errors import (
    AccessDeniedError,
    APIError,
    NotFoundError,
    TransientAPIError,
)


def client_error(code: str, operation: str = "AttachRolePolicy") -> ClientError:
    """Build a botocore ClientError with the given error code."""
    return ClientError({"Error": {"Code": code, "Message": f"{code} message"}}, operation)


class TestTranslateClientError:
    """Test mapping of botocore failures onto the error taxonomy."""

    @pytest.mark.parametrize(
        ("code", "expected"),
        [
            ("Throttling", TransientAPIError),
            ("ThrottlingException", TransientAPIError),
            ("RequestLimitExceeded", TransientAPIError),
            ("ServiceFailure", TransientAPIError),
            ("NoSuchEntity", NotFoundError),
            ("ResourceNotFoundException", NotFoundError),
            ("AccessDenied", AccessDeniedError),
            ("AccessDeniedException", AccessDeniedError),
            ("LimitExceeded", APIError),
            ("MalformedPolicyDocument", APIError),
        ],
    )
    def test_error_codes(self, code, expected):
        """Test each error code maps to the expected error kind."""
        error = translate_client_error("AttachRolePolicy", client_error(code))

        assert type(error) is expected
        assert error.error_code == code
        assert error.operation == "AttachRolePolicy"
        assert code in str(error)

    def test_only_transient_errors_are_retryable(self):
        """Test the retryable flag follows the error kind."""
        assert translate_client_error("op", client_error("Throttling")).retryable
        assert not translate_client_error("op", client_error("NoSuchEntity")).retryable
        assert not translate_client_error("op", client_error("AccessDenied")).retryable

    def test_connection_errors_are_transient(self):
        """Test botocore connectivity failures are retryable."""
        connect = translate_client_error(
            "ListAttachedRolePolicies",
            EndpointConnectionError(endpoint_url="https://iam.amazonaws.com"),
        )

        assert isinstance(connect, TransientAPIError)
        assert connect.error_code == "EndpointConnectionError"


class TestAWSClients:
    """Test the boto3 wrapper."""

    def test_calls_are_passed_through(self):
        """Test keyword arguments reach the underlying clients."""
        iam = Mock()
        config = Mock()
        iam.list_attached_user_policies.return_value = {"AttachedPolicies": []}
        config.list_discovered_resources.return_value = {"resourceIdentifiers": []}
        clients = AWSClients(iam_client=iam, config_client=config)

        assert clients.list_attached_user_policies(UserName="alice", MaxItems=10) == {
            "AttachedPolicies": []
        }
        clients.attach_group_policy(GroupName="ops", PolicyArn="arn:policy")
        clients.detach_role_policy(RoleName="app", PolicyArn="arn:policy")
        clients.list_discovered_resources(
            resourceType="AWS::IAM::Role", resourceIds=["AROA1"]
        )

        iam.list_attached_user_policies.assert_called_once_with(
            UserName="alice", MaxItems=10
        )
        iam.attach_group_policy.assert_called_once_with(
            GroupName="ops", PolicyArn="arn:policy"
        )
        iam.detach_role_policy.assert_called_once_with(
            RoleName="app", PolicyArn="arn:policy"
        )
        config.list_discovered_resources.assert_called_once_with(
            resourceType="AWS::IAM::Role", resourceIds=["AROA1"]
        )

    def test_client_errors_are_translated(self):
        """Test SDK errors surface as taxonomy errors chained to the cause."""
        iam = Mock()
        original = client_error("NoSuchEntity", "DetachRolePolicy")
        iam.detach_role_policy.side_effect = original
        clients = AWSClients(iam_client=iam, config_client=Mock())

        with pytest.raises(NotFoundError) as exc_info:
            clients.detach_role_policy(RoleName="gone", PolicyArn="arn:policy")

        assert exc_info.value.operation == "DetachRolePolicy"
        assert exc_info.value.__cause__ is original

    def test_throttling_is_transient(self):
        """Test throttled listings raise TransientAPIError."""
        iam = Mock()
        iam.list_attached_role_policies.side_effect = client_error(
            "Throttling", "ListAttachedRolePolicies"
        )
        clients = AWSClients(iam_client=iam, config_client=Mock())

        with pytest.raises(TransientAPIError):
            clients.list_attached_role_policies(RoleName="app")

    @patch("aws_clients.boto3")
    def test_from_credentials_without_role_uses_ambient_chain(self, mock_boto3):
        """Test no execution role means the default credential chain."""
        clients = AWSClients.from_credentials(None, region="us-east-1")

        mock_boto3.Session.assert_called_once_with(region_name="us-east-1")
        mock_boto3.client.assert_not_called()
        assert clients.iam is mock_boto3.Session.return_value.client.return_value

    @patch("aws_clients.boto3")
    def test_from_credentials_assumes_execution_role(self, mock_boto3):
        """Test the execution role is assumed and its credentials used."""
        sts = MagicMock()
        sts.assume_role.return_value = {
            "Credentials": {
                "AccessKeyId": "AKIAEXAMPLE",
                "SecretAccessKey": "secret",
                "SessionToken": "token",
            }
        }
        mock_boto3.client.return_value = sts
        role_arn = "arn:aws:iam::123456789012:role/remediation"

        AWSClients.from_credentials(role_arn, region="eu-west-1")

        sts.assume_role.assert_called_once_with(
            RoleArn=role_arn, RoleSessionName="iam-policy-remediation"
        )
        mock_boto3.Session.assert_called_once_with(
            aws_access_key_id="AKIAEXAMPLE",
            aws_secret_access_key="secret",
            aws_session_token="token",
            region_name="eu-west-1",
        )
        session = mock_boto3.Session.return_value
        assert [c.args[0] for c in session.client.call_args_list] == ["iam", "config"]

    @patch("aws_clients.boto3")
    def test_from_credentials_access_denied(self, mock_boto3):
        """Test a refused AssumeRole surfaces as AccessDeniedError."""
        mock_boto3.client.return_value.assume_role.side_effect = client_error(
            "AccessDenied", "AssumeRole"
        )

        with pytest.raises(AccessDeniedError) as exc_info:
            AWSClients.from_credentials("arn:aws:iam::123456789012:role/nope")

        assert exc_info.value.operation == "AssumeRole"


class TestSetupLogging:
    """Test logging setup."""

    def test_no_duplicate_handlers(self):
        """Test repeated setup does not stack handlers."""
        first = setup_logging("INFO", "test_aws_clients.logger")
        second = setup_logging("DEBUG", "test_aws_clients.logger")

        assert first is second
        assert len(second.handlers) == 1
        assert second.level == logging.DEBUG


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
