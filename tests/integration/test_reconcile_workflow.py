"""End-to-end reconcile workflows against the in-memory control plane.

Tests the complete flow: plan -> apply -> change document -> re-plan ->
apply, plus drift, refresh, stale plans, locking and destroy.
"""

import pytest

from sitestack.config.document import parse_document
from sitestack.core.exceptions import (
    ApplyError,
    ControlPlaneRejectedError,
    ControlPlaneThrottledError,
    RemoteConflictError,
    StalePlanError,
    StateLockedError,
)
from sitestack.models.plan import Action

pytestmark = pytest.mark.integration


def _actions(plan):
    return {op.address: op.action for op in plan.operations}


class TestReconcileWorkflow:
    """Test converging remote resources over several runs."""

    @pytest.mark.asyncio
    async def test_initial_apply(self, reconciler, plane, store, site_document):
        """A first apply creates everything and saves outputs."""
        result = await reconciler.reconcile(site_document)

        assert len(result.completed) == 4
        assert result.skipped == []
        assert len(plane.resources) == 4

        state = store.load()
        website_id = state.resources["s3_bucket_website.site"].id
        cdn_id = state.resources["cloudfront_distribution.cdn"].id
        assert result.outputs == {
            "website_endpoint": f"http://website_endpoint.{website_id}",
            "cdn_domain": f"domain_name.{cdn_id}",
        }
        assert result.serial == state.serial
        assert reconciler.outputs() == result.outputs

    @pytest.mark.asyncio
    async def test_replan_is_noop(self, reconciler, plane, site_document):
        """Planning right after apply shows no changes and makes no calls."""
        await reconciler.reconcile(site_document)
        calls = len(plane.calls)

        plan = await reconciler.plan(site_document)

        assert plan.has_changes is False
        assert set(_actions(plan).values()) == {Action.NOOP}
        assert len(plane.calls) == calls

    @pytest.mark.asyncio
    async def test_variable_change_updates_in_place(self, reconciler, plane, store, site_document):
        """Changing a mutable value updates only the affected resources."""
        await reconciler.reconcile(site_document)

        plan = await reconciler.plan(site_document, {"index_document": "home.html"})

        assert _actions(plan) == {
            "s3_bucket.site": Action.NOOP,
            "s3_bucket_policy.public_read": Action.NOOP,
            "s3_bucket_website.site": Action.UPDATE,
            "cloudfront_distribution.cdn": Action.UPDATE,
        }
        await reconciler.apply(plan)

        website = store.load().resources["s3_bucket_website.site"]
        assert plane.resources[website.id]["index_document"] == "home.html"

    @pytest.mark.asyncio
    async def test_rename_bucket_replaces_dependents(self, reconciler, plane, store, site_document):
        """A force-new change replaces the bucket and cascades to dependents."""
        await reconciler.reconcile(site_document)
        before = store.load().resources
        old_bucket = before["s3_bucket.site"].id
        old_policy = before["s3_bucket_policy.public_read"].id
        old_website = before["s3_bucket_website.site"].id
        calls = len(plane.calls)

        plan = await reconciler.plan(site_document, {"bucket_name": "renamed-site"})

        assert _actions(plan) == {
            "s3_bucket.site": Action.REPLACE,
            "s3_bucket_policy.public_read": Action.REPLACE,
            "s3_bucket_website.site": Action.REPLACE,
            "cloudfront_distribution.cdn": Action.UPDATE,
        }
        await reconciler.apply(plan)

        state = store.load()
        new_bucket = state.resources["s3_bucket.site"].id
        website = state.resources["s3_bucket_website.site"]
        assert old_bucket not in plane.resources
        assert list(plane.of_type("s3_bucket")) == [new_bucket]
        assert plane.resources[new_bucket]["bucket"] == "renamed-site"
        assert website.inputs["bucket"] == new_bucket
        assert state.resources["cloudfront_distribution.cdn"].inputs["origin_domain_name"] == (
            f"website_endpoint.{website.id}"
        )
        assert len(plane.resources) == 4
        mutations = [call for call in plane.calls[calls:] if call[0] != "read"]
        deleted = [call[2] for call in mutations if call[0] == "delete"]
        assert deleted.index(old_policy) < deleted.index(old_bucket)
        assert deleted.index(old_website) < deleted.index(old_bucket)
        # Every old resource is gone before the renamed bucket is created
        assert [call[0] for call in mutations][:3] == ["delete"] * 3

    @pytest.mark.asyncio
    async def test_removed_resource_deleted(self, reconciler, plane, store, site_data):
        """Resources dropped from the document are deleted."""
        await reconciler.reconcile(parse_document(site_data))
        site_data["resources"] = site_data["resources"][:3]
        site_data["outputs"].pop("cdn_domain")
        document = parse_document(site_data)

        plan = await reconciler.plan(document)
        assert _actions(plan)["cloudfront_distribution.cdn"] is Action.DELETE

        result = await reconciler.apply(plan)

        assert result.completed == ["cloudfront_distribution.cdn"]
        assert plane.of_type("cloudfront_distribution") == {}
        assert "cloudfront_distribution.cdn" not in store.load().resources
        assert set(result.outputs) == {"website_endpoint"}

    @pytest.mark.asyncio
    async def test_removed_dependency_deleted_after_dependent_updated(self, reconciler, plane):
        """A survivor is repointed before the resource it referenced is deleted."""
        await reconciler.reconcile(
            parse_document(
                {
                    "resources": [
                        {"type": "thing", "name": "a", "attributes": {"size": 1}},
                        {"type": "user", "name": "b", "attributes": {"ref": "${thing.a}"}},
                    ]
                }
            )
        )
        calls = len(plane.calls)
        document = parse_document(
            {"resources": [{"type": "user", "name": "b", "attributes": {"ref": "literal"}}]}
        )

        result = await reconciler.reconcile(document)

        mutations = [call for call in plane.calls[calls:] if call[0] != "read"]
        assert mutations == [("update", "user", "user-0002"), ("delete", "thing", "thing-0001")]
        assert result.completed == ["user.b", "thing.a"]
        assert plane.resources == {"user-0002": {"ref": "literal"}}

    @pytest.mark.asyncio
    async def test_destroy(self, reconciler, plane, store, site_document):
        """Destroy removes every resource, dependents first."""
        await reconciler.reconcile(site_document)

        result = await reconciler.destroy(site_document)

        assert result.completed[0] == "cloudfront_distribution.cdn"
        assert result.completed[-1] == "s3_bucket.site"
        assert plane.resources == {}
        state = store.load()
        assert state.resources == {}
        assert state.outputs == {}

    @pytest.mark.asyncio
    async def test_stale_plan_rejected(self, reconciler, site_document):
        """A plan computed before another apply cannot be applied."""
        stale = await reconciler.plan(site_document)
        await reconciler.reconcile(site_document)

        with pytest.raises(StalePlanError):
            await reconciler.apply(stale)

    @pytest.mark.asyncio
    async def test_lock_held_by_other_run(self, reconciler, store, site_document):
        """Apply fails while another run holds the state lock."""
        plan = await reconciler.plan(site_document)

        async with store.lock("other-run"):
            with pytest.raises(StateLockedError):
                await reconciler.apply(plan)

        assert not store.lock_path.exists()

    @pytest.mark.asyncio
    async def test_failed_apply_resumes(self, reconciler, plane, store, site_document):
        """After a failure, re-planning continues from what was applied."""
        plane.fail_next(
            "create", "s3_bucket_website", ControlPlaneRejectedError("memory", "bad request")
        )

        with pytest.raises(ApplyError):
            await reconciler.reconcile(site_document)

        assert set(store.load().resources) == {"s3_bucket.site", "s3_bucket_policy.public_read"}

        plan = await reconciler.plan(site_document)
        assert _actions(plan) == {
            "s3_bucket.site": Action.NOOP,
            "s3_bucket_policy.public_read": Action.NOOP,
            "s3_bucket_website.site": Action.CREATE,
            "cloudfront_distribution.cdn": Action.CREATE,
        }
        await reconciler.apply(plan)

        assert len(plane.of_type("s3_bucket")) == 1
        assert len(plane.resources) == 4


class TestDriftAndRefresh:
    """Test out-of-band remote changes."""

    @pytest.mark.asyncio
    async def test_drift_blocks_update(self, reconciler, plane, store, site_data):
        """Updating a resource that changed remotely is a conflict."""
        await reconciler.reconcile(parse_document(site_data))
        bucket_id = store.load().resources["s3_bucket.site"].id
        plane.drift(bucket_id, tags={"env": "manual"})
        site_data["resources"][0]["attributes"]["tags"] = {"env": "prod"}
        document = parse_document(site_data)

        with pytest.raises(ApplyError) as exc_info:
            await reconciler.reconcile(document)

        assert isinstance(exc_info.value.failures["s3_bucket.site"], RemoteConflictError)
        assert plane.resources[bucket_id]["tags"] == {"env": "manual"}

    @pytest.mark.asyncio
    async def test_refresh_then_apply_corrects_drift(self, reconciler, plane, store, site_data):
        """Refresh records remote values so the next apply can fix them."""
        await reconciler.reconcile(parse_document(site_data))
        bucket_id = store.load().resources["s3_bucket.site"].id
        plane.drift(bucket_id, tags={"env": "manual"})

        snapshot = await reconciler.refresh()

        assert snapshot.resources["s3_bucket.site"].inputs["tags"] == {"env": "manual"}
        plan = await reconciler.plan(parse_document(site_data))
        assert _actions(plan)["s3_bucket.site"] is Action.UPDATE

        await reconciler.apply(plan)

        assert plane.resources[bucket_id]["tags"] == {"env": "test"}

    @pytest.mark.asyncio
    async def test_refresh_drops_deleted_resources(self, reconciler, plane, store, site_document):
        """Resources deleted remotely are recreated on the next apply."""
        await reconciler.reconcile(site_document)
        cdn_id = store.load().resources["cloudfront_distribution.cdn"].id
        plane.remove(cdn_id)

        snapshot = await reconciler.refresh()

        assert "cloudfront_distribution.cdn" not in snapshot.resources
        plan = await reconciler.plan(site_document)
        assert _actions(plan)["cloudfront_distribution.cdn"] is Action.CREATE
        await reconciler.apply(plan)
        assert len(plane.of_type("cloudfront_distribution")) == 1

    @pytest.mark.asyncio
    async def test_refresh_retries_throttled_reads(self, reconciler, plane, store, site_document):
        """Throttled reads during refresh are retried instead of failing it."""
        await reconciler.reconcile(site_document)
        plane.fail_next(
            "read", "s3_bucket", ControlPlaneThrottledError("memory", "slow down"), times=2
        )
        calls = len(plane.calls)

        snapshot = await reconciler.refresh()

        assert "s3_bucket.site" in snapshot.resources
        reads = [call for call in plane.calls[calls:] if call[:2] == ("read", "s3_bucket")]
        assert len(reads) == 3
