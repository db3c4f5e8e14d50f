"""AWS control plane handlers for an S3 static website and CloudFront.

Covers the resources a static site needs:

- s3_bucket: the bucket holding site content
- s3_bucket_website: static website hosting configuration
- s3_public_access_block: account-level public access switches for the bucket
- s3_bucket_policy: the public-read policy
- cloudfront_distribution: optional CDN in front of the website endpoint

boto3 is synchronous, so every call runs in a worker thread.
"""

import asyncio
import json
from typing import Any, Callable, ClassVar, Optional

import boto3
import structlog
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from sitestack.config.settings import get_settings
from sitestack.core.exceptions import (
    ControlPlaneError,
    ControlPlaneNotFoundError,
    ControlPlaneRejectedError,
    ControlPlaneThrottledError,
    ControlPlaneUnavailableError,
)
from sitestack.providers.base import Provider, RemoteResource, ResourceHandler
from sitestack.providers.registry import register_provider

logger = structlog.get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

THROTTLING_CODES = {
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "RequestThrottled",
    "RequestLimitExceeded",
    "SlowDown",
    "TooManyRequests",
    "TooManyRequestsException",
    "OperationAborted",
}

NOT_FOUND_CODES = {
    "404",
    "NotFound",
    "NoSuchBucket",
    "NoSuchBucketPolicy",
    "NoSuchDistribution",
    "NoSuchPublicAccessBlockConfiguration",
    "NoSuchTagSet",
    "NoSuchWebsiteConfiguration",
}

# Regions whose website endpoint uses "s3-website-<region>" instead of "s3-website.<region>"
LEGACY_WEBSITE_REGIONS = {
    "us-east-1",
    "us-west-1",
    "us-west-2",
    "ap-southeast-1",
    "ap-southeast-2",
    "ap-northeast-1",
    "eu-west-1",
    "sa-east-1",
    "us-gov-west-1",
}

# Managed-CachingOptimized cache policy
CACHING_OPTIMIZED_POLICY_ID = "658327ea-f89d-4fab-a63d-7e88639e58f6"

CLOUDFRONT_HOSTED_ZONE_ID = "Z2FDTNDATAQYW2"

DELETE_BATCH_SIZE = 1000


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def translate_client_error(service: str, operation: str, error: ClientError) -> ControlPlaneError:
    """Map a botocore ClientError onto the sitestack error hierarchy."""
    code = error_code(error)
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
    message = error.response.get("Error", {}).get("Message", str(error))
    details = {"operation": operation, "code": code, "status": status}

    if code in THROTTLING_CODES or status == 429:
        return ControlPlaneThrottledError(service, f"{operation} throttled: {message}", details)
    if code in NOT_FOUND_CODES or status == 404:
        return ControlPlaneNotFoundError(service, f"{operation}: {message}", details)
    if status >= 500:
        return ControlPlaneUnavailableError(service, f"{operation} failed: {message}", details)
    return ControlPlaneRejectedError(service, f"{operation} rejected: {message}", details)


def website_endpoint(bucket: str, region: str) -> str:
    separator = "-" if region in LEGACY_WEBSITE_REGIONS else "."
    return f"{bucket}.s3-website{separator}{region}.amazonaws.com"


# =============================================================================
# Handler Base
# =============================================================================


AWS_HANDLERS: dict[str, type["AWSHandler"]] = {}


def aws_handler(cls: type["AWSHandler"]) -> type["AWSHandler"]:
    """Register a handler class with the aws provider."""
    AWS_HANDLERS[cls.resource_type] = cls
    return cls


class AWSHandler(ResourceHandler):
    """Shared boto3 plumbing for AWS handlers."""

    client_name: ClassVar[str] = ""

    def __init__(self, config: dict[str, Any], client_factory: Callable[[str], Any]):
        super().__init__(config)
        self._client_factory = client_factory

    @property
    def region(self) -> str:
        return self.config["region"]

    @property
    def client(self) -> Any:
        return self._client_factory(self.client_name)

    async def _call(self, operation: str, ignore: tuple[str, ...] = (), **kwargs: Any) -> Any:
        """
        Run one boto3 call in a thread and translate its errors.

        Args:
            operation: Client method name.
            ignore: Error codes that count as success; the call returns None.
        """
        method = getattr(self.client, operation)
        try:
            return await asyncio.to_thread(method, **kwargs)
        except ClientError as e:
            if error_code(e) in ignore:
                logger.debug("aws_error_ignored", operation=operation, code=error_code(e))
                return None
            raise translate_client_error(self.service, operation, e) from e
        except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as e:
            raise ControlPlaneUnavailableError(
                self.service, f"{operation} could not reach endpoint: {e}", {"operation": operation}
            ) from e

    async def _read_or_none(self, operation: str, **kwargs: Any) -> Optional[dict]:
        try:
            return await self._call(operation, **kwargs)
        except ControlPlaneNotFoundError:
            return None


# =============================================================================
# S3 Handlers
# =============================================================================


@aws_handler
class S3BucketHandler(AWSHandler):
    """The bucket itself. Its name is also its id."""

    resource_type = "s3_bucket"
    service = "s3"
    client_name = "s3"
    force_new = frozenset({"bucket"})
    computed = frozenset({"arn", "bucket_domain_name", "bucket_regional_domain_name"})

    def _computed(self, bucket: str) -> dict[str, Any]:
        return {
            "arn": f"arn:aws:s3:::{bucket}",
            "bucket_domain_name": f"{bucket}.s3.amazonaws.com",
            "bucket_regional_domain_name": f"{bucket}.s3.{self.region}.amazonaws.com",
        }

    async def _put_tags(self, bucket: str, tags: dict[str, str]) -> None:
        if tags:
            await self._call(
                "put_bucket_tagging",
                Bucket=bucket,
                Tagging={"TagSet": [{"Key": k, "Value": str(v)} for k, v in sorted(tags.items())]},
            )
        else:
            await self._call("delete_bucket_tagging", ignore=("NoSuchBucket",), Bucket=bucket)

    async def create(self, attributes: dict[str, Any], token: str) -> RemoteResource:
        bucket = attributes["bucket"]
        kwargs: dict[str, Any] = {"Bucket": bucket}
        if self.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        # A retried create after a lost response finds the bucket already ours
        await self._call("create_bucket", ignore=("BucketAlreadyOwnedByYou",), **kwargs)
        await self._put_tags(bucket, attributes.get("tags") or {})
        logger.info("s3_bucket_created", bucket=bucket, region=self.region)
        return RemoteResource(id=bucket, attributes={**attributes, **self._computed(bucket)})

    async def read(self, resource_id: str, attributes: dict[str, Any]) -> Optional[RemoteResource]:
        if await self._read_or_none("head_bucket", Bucket=resource_id) is None:
            return None
        response = await self._read_or_none("get_bucket_tagging", Bucket=resource_id)
        tags = {tag["Key"]: tag["Value"] for tag in (response or {}).get("TagSet", [])}
        return RemoteResource(
            id=resource_id,
            attributes={"bucket": resource_id, "tags": tags, **self._computed(resource_id)},
        )

    async def update(
        self,
        resource_id: str,
        attributes: dict[str, Any],
        changed: list[str],
        token: str,
    ) -> RemoteResource:
        if "tags" in changed:
            await self._put_tags(resource_id, attributes.get("tags") or {})
        return RemoteResource(id=resource_id, attributes={**attributes, **self._computed(resource_id)})

    def differs(self, key: str, expected: Any, actual: Any) -> bool:
        if key == "tags":
            return {k: str(v) for k, v in (expected or {}).items()} != (actual or {})
        return super().differs(key, expected, actual)

    async def _empty(self, bucket: str) -> None:
        paginator = self.client.get_paginator("list_objects_v2")
        pages = await asyncio.to_thread(lambda: list(paginator.paginate(Bucket=bucket)))
        keys = [obj["Key"] for page in pages for obj in page.get("Contents", [])]
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start:start + DELETE_BATCH_SIZE]
            await self._call(
                "delete_objects",
                Bucket=bucket,
                Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
            )
        logger.info("s3_bucket_emptied", bucket=bucket, objects=len(keys))

    async def delete(self, resource_id: str, attributes: dict[str, Any], token: str) -> None:
        if attributes.get("force_destroy"):
            try:
                await self._empty(resource_id)
            except ClientError as e:
                if error_code(e) != "NoSuchBucket":
                    raise translate_client_error(self.service, "list_objects_v2", e) from e
        await self._call("delete_bucket", ignore=("NoSuchBucket",), Bucket=resource_id)
        logger.info("s3_bucket_deleted", bucket=resource_id)


@aws_handler
class S3BucketWebsiteHandler(AWSHandler):
    """Static website hosting on a bucket."""

    resource_type = "s3_bucket_website"
    service = "s3"
    client_name = "s3"
    force_new = frozenset({"bucket"})
    computed = frozenset({"website_endpoint", "website_domain"})

    def _configuration(self, attributes: dict[str, Any]) -> dict[str, Any]:
        config: dict[str, Any] = {
            "IndexDocument": {"Suffix": attributes.get("index_document", "index.html")}
        }
        if attributes.get("error_document"):
            config["ErrorDocument"] = {"Key": attributes["error_document"]}
        return config

    def _remote(self, bucket: str, attributes: dict[str, Any]) -> RemoteResource:
        endpoint = website_endpoint(bucket, self.region)
        return RemoteResource(
            id=bucket,
            attributes={
                **attributes,
                "website_endpoint": endpoint,
                "website_domain": endpoint.split(".", 1)[1],
            },
        )

    async def create(self, attributes: dict[str, Any], token: str) -> RemoteResource:
        bucket = attributes["bucket"]
        await self._call(
            "put_bucket_website",
            Bucket=bucket,
            WebsiteConfiguration=self._configuration(attributes),
        )
        return self._remote(bucket, attributes)

    async def read(self, resource_id: str, attributes: dict[str, Any]) -> Optional[RemoteResource]:
        response = await self._read_or_none("get_bucket_website", Bucket=resource_id)
        if response is None:
            return None
        remote = {
            "bucket": resource_id,
            "index_document": response.get("IndexDocument", {}).get("Suffix"),
        }
        if "ErrorDocument" in response:
            remote["error_document"] = response["ErrorDocument"]["Key"]
        return self._remote(resource_id, remote)

    async def update(
        self,
        resource_id: str,
        attributes: dict[str, Any],
        changed: list[str],
        token: str,
    ) -> RemoteResource:
        return await self.create(attributes, token)

    async def delete(self, resource_id: str, attributes: dict[str, Any], token: str) -> None:
        await self._call(
            "delete_bucket_website",
            ignore=("NoSuchBucket", "NoSuchWebsiteConfiguration"),
            Bucket=resource_id,
        )


@aws_handler
class S3PublicAccessBlockHandler(AWSHandler):
    """Public access block switches. A public website sets them all to false."""

    resource_type = "s3_public_access_block"
    service = "s3"
    client_name = "s3"
    force_new = frozenset({"bucket"})

    FLAGS = {
        "block_public_acls": "BlockPublicAcls",
        "ignore_public_acls": "IgnorePublicAcls",
        "block_public_policy": "BlockPublicPolicy",
        "restrict_public_buckets": "RestrictPublicBuckets",
    }

    async def create(self, attributes: dict[str, Any], token: str) -> RemoteResource:
        bucket = attributes["bucket"]
        await self._call(
            "put_public_access_block",
            Bucket=bucket,
            PublicAccessBlockConfiguration={
                api: bool(attributes.get(key, False)) for key, api in self.FLAGS.items()
            },
        )
        return RemoteResource(id=bucket, attributes=dict(attributes))

    async def read(self, resource_id: str, attributes: dict[str, Any]) -> Optional[RemoteResource]:
        response = await self._read_or_none("get_public_access_block", Bucket=resource_id)
        if response is None:
            return None
        config = response.get("PublicAccessBlockConfiguration", {})
        remote = {key: config.get(api, False) for key, api in self.FLAGS.items()}
        return RemoteResource(id=resource_id, attributes={"bucket": resource_id, **remote})

    async def update(
        self,
        resource_id: str,
        attributes: dict[str, Any],
        changed: list[str],
        token: str,
    ) -> RemoteResource:
        return await self.create(attributes, token)

    async def delete(self, resource_id: str, attributes: dict[str, Any], token: str) -> None:
        await self._call(
            "delete_public_access_block",
            ignore=("NoSuchBucket", "NoSuchPublicAccessBlockConfiguration"),
            Bucket=resource_id,
        )


@aws_handler
class S3BucketPolicyHandler(AWSHandler):
    """Bucket policy. ``policy`` may be a mapping or a JSON string."""

    resource_type = "s3_bucket_policy"
    service = "s3"
    client_name = "s3"
    force_new = frozenset({"bucket"})

    @staticmethod
    def _parse(policy: Any) -> Any:
        return json.loads(policy) if isinstance(policy, str) else policy

    async def create(self, attributes: dict[str, Any], token: str) -> RemoteResource:
        bucket = attributes["bucket"]
        await self._call(
            "put_bucket_policy",
            Bucket=bucket,
            Policy=json.dumps(self._parse(attributes["policy"])),
        )
        return RemoteResource(id=bucket, attributes=dict(attributes))

    async def read(self, resource_id: str, attributes: dict[str, Any]) -> Optional[RemoteResource]:
        response = await self._read_or_none("get_bucket_policy", Bucket=resource_id)
        if response is None:
            return None
        return RemoteResource(
            id=resource_id,
            attributes={"bucket": resource_id, "policy": json.loads(response["Policy"])},
        )

    async def update(
        self,
        resource_id: str,
        attributes: dict[str, Any],
        changed: list[str],
        token: str,
    ) -> RemoteResource:
        return await self.create(attributes, token)

    def differs(self, key: str, expected: Any, actual: Any) -> bool:
        if key == "policy":
            return self._parse(expected) != self._parse(actual)
        return super().differs(key, expected, actual)

    async def delete(self, resource_id: str, attributes: dict[str, Any], token: str) -> None:
        await self._call(
            "delete_bucket_policy",
            ignore=("NoSuchBucket", "NoSuchBucketPolicy"),
            Bucket=resource_id,
        )


# =============================================================================
# CloudFront
# =============================================================================


@aws_handler
class CloudFrontDistributionHandler(AWSHandler):
    """
    A distribution with a single custom origin (the S3 website endpoint).

    Creation is idempotent through CallerReference, which carries the
    operation token. Deletion disables the distribution, waits for the
    change to deploy, then deletes with the latest ETag.
    """

    resource_type = "cloudfront_distribution"
    service = "cloudfront"
    client_name = "cloudfront"
    computed = frozenset({"arn", "domain_name", "status", "hosted_zone_id"})

    DEFAULTS = {
        "origin_id": "s3-website",
        "origin_protocol_policy": "http-only",
        "default_root_object": "index.html",
        "enabled": True,
        "price_class": "PriceClass_100",
        "comment": "",
        "aliases": [],
        "viewer_protocol_policy": "redirect-to-https",
        "acm_certificate_arn": None,
    }

    def _settings(self, attributes: dict[str, Any]) -> dict[str, Any]:
        return {**self.DEFAULTS, **attributes}

    def _apply_settings(self, config: dict[str, Any], attributes: dict[str, Any]) -> dict[str, Any]:
        values = self._settings(attributes)
        aliases = list(values["aliases"] or [])
        config["Aliases"] = {"Quantity": len(aliases), **({"Items": aliases} if aliases else {})}
        config["DefaultRootObject"] = values["default_root_object"]
        config["Origins"] = {
            "Quantity": 1,
            "Items": [
                {
                    "Id": values["origin_id"],
                    "DomainName": values["origin_domain_name"],
                    "CustomOriginConfig": {
                        "HTTPPort": 80,
                        "HTTPSPort": 443,
                        "OriginProtocolPolicy": values["origin_protocol_policy"],
                    },
                }
            ],
        }
        config["DefaultCacheBehavior"] = {
            "TargetOriginId": values["origin_id"],
            "ViewerProtocolPolicy": values["viewer_protocol_policy"],
            "CachePolicyId": CACHING_OPTIMIZED_POLICY_ID,
            "Compress": True,
            "AllowedMethods": {
                "Quantity": 2,
                "Items": ["GET", "HEAD"],
                "CachedMethods": {"Quantity": 2, "Items": ["GET", "HEAD"]},
            },
        }
        config["Comment"] = values["comment"]
        config["PriceClass"] = values["price_class"]
        config["Enabled"] = bool(values["enabled"])
        config["HttpVersion"] = "http2"
        if values["acm_certificate_arn"]:
            config["ViewerCertificate"] = {
                "ACMCertificateArn": values["acm_certificate_arn"],
                "SSLSupportMethod": "sni-only",
                "MinimumProtocolVersion": "TLSv1.2_2021",
            }
        else:
            config["ViewerCertificate"] = {"CloudFrontDefaultCertificate": True}
        return config

    def _attributes(self, distribution: dict[str, Any]) -> dict[str, Any]:
        config = distribution["DistributionConfig"]
        origin = config["Origins"]["Items"][0]
        certificate = config.get("ViewerCertificate", {})
        return {
            "origin_domain_name": origin["DomainName"],
            "origin_id": origin["Id"],
            "origin_protocol_policy": origin.get("CustomOriginConfig", {}).get(
                "OriginProtocolPolicy", self.DEFAULTS["origin_protocol_policy"]
            ),
            "default_root_object": config.get("DefaultRootObject", ""),
            "enabled": config["Enabled"],
            "price_class": config.get("PriceClass"),
            "comment": config.get("Comment", ""),
            "aliases": config.get("Aliases", {}).get("Items", []),
            "viewer_protocol_policy": config["DefaultCacheBehavior"]["ViewerProtocolPolicy"],
            "acm_certificate_arn": certificate.get("ACMCertificateArn"),
            "arn": distribution["ARN"],
            "domain_name": distribution["DomainName"],
            "status": distribution["Status"],
            "hosted_zone_id": CLOUDFRONT_HOSTED_ZONE_ID,
        }

    def _remote(self, distribution: dict[str, Any], attributes: dict[str, Any]) -> RemoteResource:
        remote = self._attributes(distribution)
        return RemoteResource(
            id=distribution["Id"],
            attributes={**attributes, **{key: remote[key] for key in self.computed}},
        )

    async def create(self, attributes: dict[str, Any], token: str) -> RemoteResource:
        config = self._apply_settings({"CallerReference": token}, attributes)
        response = await self._call("create_distribution", DistributionConfig=config)
        distribution = response["Distribution"]
        logger.info(
            "cloudfront_distribution_created",
            id=distribution["Id"],
            domain_name=distribution["DomainName"],
        )
        return self._remote(distribution, attributes)

    async def read(self, resource_id: str, attributes: dict[str, Any]) -> Optional[RemoteResource]:
        response = await self._read_or_none("get_distribution", Id=resource_id)
        if response is None:
            return None
        distribution = response["Distribution"]
        return RemoteResource(id=resource_id, attributes=self._attributes(distribution))

    async def update(
        self,
        resource_id: str,
        attributes: dict[str, Any],
        changed: list[str],
        token: str,
    ) -> RemoteResource:
        current = await self._call("get_distribution_config", Id=resource_id)
        config = self._apply_settings(current["DistributionConfig"], attributes)
        response = await self._call(
            "update_distribution",
            Id=resource_id,
            IfMatch=current["ETag"],
            DistributionConfig=config,
        )
        return self._remote(response["Distribution"], attributes)

    async def _wait_deployed(self, resource_id: str) -> None:
        timeout = self.config.get("cloudfront_wait_timeout_seconds", 1800)
        delay = 30
        waiter = self.client.get_waiter("distribution_deployed")
        await asyncio.to_thread(
            waiter.wait,
            Id=resource_id,
            WaiterConfig={"Delay": delay, "MaxAttempts": max(1, timeout // delay)},
        )

    async def delete(self, resource_id: str, attributes: dict[str, Any], token: str) -> None:
        current = await self._read_or_none("get_distribution_config", Id=resource_id)
        if current is None:
            return
        etag = current["ETag"]
        if current["DistributionConfig"]["Enabled"]:
            config = dict(current["DistributionConfig"], Enabled=False)
            response = await self._call(
                "update_distribution", Id=resource_id, IfMatch=etag, DistributionConfig=config
            )
            etag = response["ETag"]
            logger.info("cloudfront_distribution_disabled", id=resource_id)
        await self._wait_deployed(resource_id)
        await self._call("delete_distribution", ignore=("NoSuchDistribution",), Id=resource_id, IfMatch=etag)
        logger.info("cloudfront_distribution_deleted", id=resource_id)


# =============================================================================
# Provider
# =============================================================================


@register_provider("aws")
class AWSProvider(Provider):
    """
    Provider for AWS.

    Config options:
        region: Region for S3 buckets (defaults to settings.aws_region).
        endpoint_url: Override endpoint, e.g. LocalStack.
        clients: Mapping of boto3 service name to a prebuilt client.
    """

    def __init__(self, config: Optional[dict[str, Any]] = None):
        super().__init__(config)
        settings = get_settings()
        self.config.setdefault("region", settings.aws_region)
        self.config.setdefault("endpoint_url", settings.aws_endpoint_url)
        self.config.setdefault(
            "cloudfront_wait_timeout_seconds", settings.cloudfront_wait_timeout_seconds
        )
        self._clients: dict[str, Any] = dict(self.config.pop("clients", None) or {})

    def client(self, service: str) -> Any:
        if service not in self._clients:
            kwargs: dict[str, Any] = {"region_name": self.config["region"]}
            if self.config.get("endpoint_url"):
                kwargs["endpoint_url"] = self.config["endpoint_url"]
            self._clients[service] = boto3.client(service, **kwargs)
            logger.debug("aws_client_created", service=service, **kwargs)
        return self._clients[service]

    def resource_types(self) -> list[str]:
        return sorted(AWS_HANDLERS)

    def _build_handler(self, resource_type: str) -> ResourceHandler:
        return AWS_HANDLERS[resource_type](self.config, self.client)
