"""
Unit tests for the AWS provider.

boto3 clients are replaced with MagicMocks injected through the
``clients`` provider option, so no network calls are made.
"""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from sitestack.core.exceptions import (
    ConfigurationError,
    ControlPlaneNotFoundError,
    ControlPlaneRejectedError,
    ControlPlaneThrottledError,
    ControlPlaneUnavailableError,
    RetryableError,
    UnknownResourceTypeError,
)
from sitestack.providers.aws import (
    CLOUDFRONT_HOSTED_ZONE_ID,
    AWSProvider,
    translate_client_error,
    website_endpoint,
)
from sitestack.providers.registry import get_provider, list_providers


def _client_error(code, status=400, operation="HeadBucket"):
    return ClientError(
        {"Error": {"Code": code, "Message": "test"}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


@pytest.fixture
def s3():
    return MagicMock(name="s3")


@pytest.fixture
def cloudfront():
    return MagicMock(name="cloudfront")


@pytest.fixture
def aws(s3, cloudfront):
    return AWSProvider({"region": "eu-central-1", "clients": {"s3": s3, "cloudfront": cloudfront}})


def _distribution(enabled=True):
    return {
        "Id": "E123",
        "ARN": "arn:aws:cloudfront::123456789012:distribution/E123",
        "DomainName": "d111.cloudfront.net",
        "Status": "InProgress",
        "DistributionConfig": {
            "Origins": {
                "Quantity": 1,
                "Items": [
                    {
                        "Id": "s3-website",
                        "DomainName": "site.s3-website.eu-central-1.amazonaws.com",
                        "CustomOriginConfig": {"OriginProtocolPolicy": "http-only"},
                    }
                ],
            },
            "DefaultRootObject": "index.html",
            "DefaultCacheBehavior": {"ViewerProtocolPolicy": "redirect-to-https"},
            "Enabled": enabled,
            "PriceClass": "PriceClass_100",
            "Comment": "",
            "Aliases": {"Quantity": 0},
        },
    }


class TestErrorTranslation:
    """Test mapping of botocore errors."""

    def test_throttling_is_retryable(self):
        """Throttling codes become ControlPlaneThrottledError."""
        error = translate_client_error("s3", "put_bucket_policy", _client_error("SlowDown", 503))

        assert isinstance(error, ControlPlaneThrottledError)
        assert isinstance(error, RetryableError)

    def test_not_found(self):
        """404s become ControlPlaneNotFoundError."""
        error = translate_client_error("s3", "head_bucket", _client_error("404", 404))

        assert isinstance(error, ControlPlaneNotFoundError)

    def test_server_error_is_unavailable(self):
        """5xx responses are transient."""
        error = translate_client_error("s3", "head_bucket", _client_error("InternalError", 500))

        assert isinstance(error, ControlPlaneUnavailableError)

    def test_access_denied_is_rejected(self):
        """Other client errors are permanent."""
        error = translate_client_error("s3", "create_bucket", _client_error("AccessDenied", 403))

        assert isinstance(error, ControlPlaneRejectedError)
        assert error.details["code"] == "AccessDenied"


class TestWebsiteEndpoint:
    """Test S3 website endpoint naming."""

    def test_legacy_region_uses_dash(self):
        assert website_endpoint("site", "us-east-1") == "site.s3-website-us-east-1.amazonaws.com"

    def test_newer_region_uses_dot(self):
        assert website_endpoint("site", "eu-central-1") == "site.s3-website.eu-central-1.amazonaws.com"


class TestAWSProvider:
    """Test provider wiring."""

    def test_registered(self):
        """The aws and memory providers are registered."""
        assert {"aws", "memory"} <= set(list_providers())
        assert isinstance(get_provider("aws", {"clients": {}}), AWSProvider)

    def test_unknown_provider(self):
        """Unknown provider names fail."""
        with pytest.raises(ConfigurationError):
            get_provider("gcp")

    def test_resource_types(self, aws):
        """All static website types are managed."""
        assert aws.resource_types() == [
            "cloudfront_distribution",
            "s3_bucket",
            "s3_bucket_policy",
            "s3_bucket_website",
            "s3_public_access_block",
        ]
        with pytest.raises(UnknownResourceTypeError):
            aws.handler_for("route53_record")

    def test_injected_clients_used(self, aws, s3):
        """Injected clients replace boto3.client."""
        assert aws.client("s3") is s3


class TestS3BucketHandler:
    """Test the bucket handler."""

    @pytest.mark.asyncio
    async def test_create_outside_us_east_1(self, aws, s3):
        """A location constraint is sent and tags are applied."""
        handler = aws.handler_for("s3_bucket")

        remote = await handler.create({"bucket": "site", "tags": {"env": "prod"}}, "token")

        s3.create_bucket.assert_called_once_with(
            Bucket="site",
            CreateBucketConfiguration={"LocationConstraint": "eu-central-1"},
        )
        s3.put_bucket_tagging.assert_called_once_with(
            Bucket="site", Tagging={"TagSet": [{"Key": "env", "Value": "prod"}]}
        )
        assert remote.id == "site"
        assert remote.attributes["arn"] == "arn:aws:s3:::site"

    @pytest.mark.asyncio
    async def test_create_already_owned(self, aws, s3):
        """A retried create that finds our own bucket succeeds."""
        s3.create_bucket.side_effect = _client_error("BucketAlreadyOwnedByYou", 409)
        handler = aws.handler_for("s3_bucket")

        remote = await handler.create({"bucket": "site"}, "token")

        assert remote.id == "site"
        s3.delete_bucket_tagging.assert_called_once()

    @pytest.mark.asyncio
    async def test_read_missing_bucket(self, aws, s3):
        """A 404 on head_bucket means the bucket is gone."""
        s3.head_bucket.side_effect = _client_error("404", 404)

        assert await aws.handler_for("s3_bucket").read("site", {}) is None

    @pytest.mark.asyncio
    async def test_read_without_tags(self, aws, s3):
        """NoSuchTagSet reads as no tags."""
        s3.head_bucket.return_value = {}
        s3.get_bucket_tagging.side_effect = _client_error("NoSuchTagSet", 404)

        remote = await aws.handler_for("s3_bucket").read("site", {})

        assert remote.attributes["tags"] == {}

    @pytest.mark.asyncio
    async def test_throttled_call_raises_retryable(self, aws, s3):
        """Throttling surfaces as a retryable error for the executor."""
        s3.put_bucket_tagging.side_effect = _client_error("SlowDown", 503)

        with pytest.raises(ControlPlaneThrottledError):
            await aws.handler_for("s3_bucket").update("site", {"tags": {"a": "b"}}, ["tags"], "t")

    @pytest.mark.asyncio
    async def test_force_destroy_empties_bucket(self, aws, s3):
        """Objects are deleted before the bucket when force_destroy is set."""
        paginator = MagicMock()
        paginator.paginate.return_value = [{"Contents": [{"Key": "index.html"}, {"Key": "a.css"}]}]
        s3.get_paginator.return_value = paginator

        await aws.handler_for("s3_bucket").delete("site", {"force_destroy": True}, "token")

        s3.delete_objects.assert_called_once_with(
            Bucket="site",
            Delete={"Objects": [{"Key": "index.html"}, {"Key": "a.css"}], "Quiet": True},
        )
        s3.delete_bucket.assert_called_once_with(Bucket="site")

    def test_tags_compared_as_strings(self, aws):
        """Numeric tag values do not count as drift."""
        handler = aws.handler_for("s3_bucket")

        assert handler.differs("tags", {"version": 2}, {"version": "2"}) is False
        assert handler.differs("tags", {"version": 2}, {"version": "3"}) is True


class TestS3BucketPolicyHandler:
    """Test the bucket policy handler."""

    @pytest.mark.asyncio
    async def test_policy_serialized(self, aws, s3):
        """Mapping policies are sent as JSON."""
        policy = {"Version": "2012-10-17", "Statement": []}

        await aws.handler_for("s3_bucket_policy").create({"bucket": "site", "policy": policy}, "t")

        s3.put_bucket_policy.assert_called_once_with(
            Bucket="site", Policy='{"Version": "2012-10-17", "Statement": []}'
        )

    def test_policy_compared_structurally(self, aws):
        """A JSON string and an equal mapping are not drift."""
        handler = aws.handler_for("s3_bucket_policy")

        assert handler.differs("policy", '{"a": [1, 2]}', {"a": [1, 2]}) is False
        assert handler.differs("policy", '{"a": [1, 2]}', {"a": [2, 1]}) is True


class TestS3BucketWebsiteHandler:
    """Test the website configuration handler."""

    @pytest.mark.asyncio
    async def test_create_reports_endpoint(self, aws, s3):
        """The computed endpoint follows the region."""
        remote = await aws.handler_for("s3_bucket_website").create(
            {"bucket": "site", "index_document": "index.html", "error_document": "404.html"}, "t"
        )

        s3.put_bucket_website.assert_called_once_with(
            Bucket="site",
            WebsiteConfiguration={
                "IndexDocument": {"Suffix": "index.html"},
                "ErrorDocument": {"Key": "404.html"},
            },
        )
        assert remote.attributes["website_endpoint"] == "site.s3-website.eu-central-1.amazonaws.com"
        assert remote.attributes["website_domain"] == "s3-website.eu-central-1.amazonaws.com"


class TestCloudFrontDistributionHandler:
    """Test the distribution handler."""

    @pytest.mark.asyncio
    async def test_create_uses_token_as_caller_reference(self, aws, cloudfront):
        """The operation token makes creation idempotent."""
        cloudfront.create_distribution.return_value = {"Distribution": _distribution()}

        remote = await aws.handler_for("cloudfront_distribution").create(
            {"origin_domain_name": "site.s3-website.eu-central-1.amazonaws.com"}, "tok-1"
        )

        config = cloudfront.create_distribution.call_args.kwargs["DistributionConfig"]
        assert config["CallerReference"] == "tok-1"
        assert config["Origins"]["Items"][0]["DomainName"] == (
            "site.s3-website.eu-central-1.amazonaws.com"
        )
        assert config["ViewerCertificate"] == {"CloudFrontDefaultCertificate": True}
        assert remote.id == "E123"
        assert remote.attributes["domain_name"] == "d111.cloudfront.net"
        assert remote.attributes["hosted_zone_id"] == CLOUDFRONT_HOSTED_ZONE_ID

    @pytest.mark.asyncio
    async def test_update_uses_etag(self, aws, cloudfront):
        """Updates send the ETag of the config they modified."""
        cloudfront.get_distribution_config.return_value = {
            "ETag": "E-OLD",
            "DistributionConfig": dict(_distribution()["DistributionConfig"], CallerReference="x"),
        }
        cloudfront.update_distribution.return_value = {"Distribution": _distribution(), "ETag": "E-NEW"}

        await aws.handler_for("cloudfront_distribution").update(
            "E123",
            {"origin_domain_name": "new.example.com", "comment": "v2"},
            ["comment", "origin_domain_name"],
            "t",
        )

        kwargs = cloudfront.update_distribution.call_args.kwargs
        assert kwargs["IfMatch"] == "E-OLD"
        assert kwargs["DistributionConfig"]["Comment"] == "v2"
        assert kwargs["DistributionConfig"]["CallerReference"] == "x"

    @pytest.mark.asyncio
    async def test_delete_disables_then_waits(self, aws, cloudfront):
        """An enabled distribution is disabled and deployed before deletion."""
        cloudfront.get_distribution_config.return_value = {
            "ETag": "E1",
            "DistributionConfig": _distribution()["DistributionConfig"],
        }
        cloudfront.update_distribution.return_value = {"ETag": "E2"}
        waiter = MagicMock()
        cloudfront.get_waiter.return_value = waiter

        await aws.handler_for("cloudfront_distribution").delete("E123", {}, "t")

        assert cloudfront.update_distribution.call_args.kwargs["DistributionConfig"]["Enabled"] is False
        waiter.wait.assert_called_once()
        cloudfront.delete_distribution.assert_called_once_with(Id="E123", IfMatch="E2")

    @pytest.mark.asyncio
    async def test_delete_missing_is_noop(self, aws, cloudfront):
        """Deleting a distribution that is already gone succeeds."""
        cloudfront.get_distribution_config.side_effect = _client_error(
            "NoSuchDistribution", 404, "GetDistributionConfig"
        )

        await aws.handler_for("cloudfront_distribution").delete("E123", {}, "t")

        cloudfront.delete_distribution.assert_not_called()
