"""Unit tests for ecr_cleanup/retention.py"""

import re
from datetime import datetime, timedelta, timezone

import pytest

from ecr_cleanup.retention import (
    BATCH_DELETE_MAX_IMAGES,
    ImageRecord,
    RetentionPolicy,
    apply_keep_filters,
    filter_old_unused_images,
    select_images_for_deletion,
    sort_images_by_push_date,
)


def pushed(images):
    return [image.pushed_at for image in images]


class TestSortImagesByPushDate:
    """Tests for sort_images_by_push_date()"""

    def test_sorts_oldest_first(self, make_image):
        images = [make_image(2), make_image(0), make_image(1)]

        result = sort_images_by_push_date(images)

        assert pushed(result) == sorted(pushed(images))

    def test_does_not_mutate_input(self, make_image):
        images = [make_image(2), make_image(0)]
        original = list(images)

        sort_images_by_push_date(images)

        assert images == original


class TestFilterOldUnusedImages:
    """Tests for filter_old_unused_images()"""

    @pytest.fixture
    def three_images(self, make_image):
        # Deliberately newest first
        return [make_image(2, "tag-3"), make_image(1, "tag-2"), make_image(0, "tag-1")]

    def test_no_images_when_under_budget(self, three_images):
        assert filter_old_unused_images(3, three_images, []) == []
        assert filter_old_unused_images(10, three_images, []) == []

    def test_no_images_when_under_budget_even_if_unused(self, three_images):
        assert filter_old_unused_images(5, three_images, {"other"}) == []

    def test_returns_oldest_image(self, three_images):
        result = filter_old_unused_images(2, three_images, [])

        assert [image.tags for image in result] == [("tag-1",)]

    def test_returns_all_images_sorted_by_date(self, three_images):
        result = filter_old_unused_images(0, three_images, [])

        assert [image.tags for image in result] == [("tag-1",), ("tag-2",), ("tag-3",)]

    def test_never_returns_latest(self, make_image):
        images = [make_image(2), make_image(1), make_image(0, "latest")]

        result = filter_old_unused_images(0, images, [])

        assert len(result) == 2
        assert all("latest" not in image.tags for image in result)
        assert pushed(result) == sorted(pushed(result))

    def test_latest_among_several_tags_is_protected(self, make_image):
        images = [make_image(0, "v1", "latest"), make_image(1, "v2")]

        result = filter_old_unused_images(0, images, [])

        assert [image.tags for image in result] == [("v2",)]

    def test_no_images_when_all_in_use(self, three_images):
        assert filter_old_unused_images(0, three_images, ["tag-1", "tag-2", "tag-3"]) == []

    def test_used_image_counts_against_budget(self, three_images):
        result = filter_old_unused_images(1, three_images, ["tag-1"])

        assert [image.tags for image in result] == [("tag-2",), ("tag-3",)]

    def test_duplicate_usage_and_tags_are_tolerated(self, make_image):
        images = [make_image(2, "tag-3", "tag-3"), make_image(1, "tag-2"), make_image(0, "tag-1")]

        result = filter_old_unused_images(1, images, ["tag-1", "tag-1", "tag-2", "tag-2"])

        assert [image.tags for image in result] == [("tag-3", "tag-3")]

    def test_oldest_used_image_is_protected(self, make_image):
        # A -> t2, B -> t1, C -> t0 with C in use
        images = [make_image(2, "A"), make_image(1, "B"), make_image(0, "C")]

        result = filter_old_unused_images(0, images, {"C"})

        assert [image.tags for image in result] == [("B",), ("A",)]

    def test_image_with_any_used_tag_is_protected(self, make_image):
        images = [make_image(0, "build-1", "prod"), make_image(1, "build-2")]

        result = filter_old_unused_images(0, images, {"prod"})

        assert [image.tags for image in result] == [("build-2",)]

    def test_untagged_images_age_out(self, make_image):
        images = [make_image(0), make_image(1, "v1")]

        result = filter_old_unused_images(1, images, {"v1"})

        assert len(result) == 1
        assert result[0].tags == ()

    def test_capped_at_batch_limit(self, make_image):
        images = [make_image(1000 - i) for i in range(1000)]

        result = filter_old_unused_images(0, images, [])

        assert len(result) == BATCH_DELETE_MAX_IMAGES
        assert pushed(result) == sorted(pushed(images))[:BATCH_DELETE_MAX_IMAGES]

    def test_many_latest_images_do_not_yield_negative_count(self, make_image):
        images = [make_image(i, "latest") for i in range(8)] + [make_image(10), make_image(11)]

        assert filter_old_unused_images(5, images, []) == []

    def test_is_idempotent_and_does_not_mutate(self, three_images):
        original = list(three_images)

        first = filter_old_unused_images(1, three_images, ["tag-2"])
        second = filter_old_unused_images(1, three_images, ["tag-2"])

        assert first == second
        assert three_images == original


class TestApplyKeepFilters:
    """Tests for apply_keep_filters()"""

    @pytest.fixture
    def images(self, make_image):
        return [make_image(0, "v1.0.0-tag-test"), make_image(1, "v1.0.0-keep-tag")]

    @pytest.mark.parametrize("filters,expected", [
        (["no-match"], 2),
        (["no-match", "also-no-match"], 2),
        (["keep"], 1),
        (["tag"], 0),
        (["tag$"], 1),
        ([], 2),
    ])
    def test_filters(self, images, filters, expected):
        assert len(apply_keep_filters(images, filters)) == expected

    def test_accepts_compiled_patterns(self, images):
        result = apply_keep_filters(images, [re.compile("^v1.0.0-keep")])

        assert [image.tags for image in result] == [("v1.0.0-tag-test",)]

    def test_untagged_images_are_not_kept(self, make_image):
        assert len(apply_keep_filters([make_image(0)], [".*"])) == 1


class TestSelectImagesForDeletion:
    """Tests for the keep filter + retention composition"""

    def test_keep_filter_excludes_old_unused_image(self, make_image):
        images = [make_image(0, "release-1.0"), make_image(1, "build-1"), make_image(2, "build-2")]
        policy = RetentionPolicy(max_images=0, keep_filters=("^release-",))

        result = select_images_for_deletion(policy, images, set())

        assert [image.tags for image in result] == [("build-1",), ("build-2",)]

    def test_keep_filtered_images_do_not_count_against_budget(self, make_image):
        images = [make_image(0, "release-1.0"), make_image(1, "build-1"), make_image(2, "build-2")]
        policy = RetentionPolicy(max_images=2, keep_filters=("^release-",))

        assert select_images_for_deletion(policy, images, set()) == []

    def test_without_filters_matches_engine(self, make_image):
        images = [make_image(2), make_image(1), make_image(0)]
        policy = RetentionPolicy(max_images=2)

        assert select_images_for_deletion(policy, images, []) == filter_old_unused_images(2, images, [])

    def test_policy_rejects_negative_max_images(self):
        with pytest.raises(ValueError):
            RetentionPolicy(max_images=-1)


class TestImageRecord:
    """Tests for ImageRecord"""

    def test_from_ecr_detail(self):
        pushed_at = datetime(2024, 5, 1, tzinfo=timezone.utc)
        detail = {
            "registryId": "123456789012",
            "repositoryName": "repo",
            "imageDigest": "sha256:abc",
            "imageTags": ["v1", "latest"],
            "imageSizeInBytes": 1024,
            "imagePushedAt": pushed_at,
        }

        record = ImageRecord.from_ecr_detail(detail)

        assert record.repository_name == "repo"
        assert record.digest == "sha256:abc"
        assert record.tags == ("v1", "latest")
        assert record.registry_id == "123456789012"
        assert record.size_in_bytes == 1024
        assert record.pushed_at == pushed_at

    def test_from_ecr_detail_without_tags(self):
        detail = {
            "repositoryName": "repo",
            "imageDigest": "sha256:abc",
            "imagePushedAt": datetime(2024, 5, 1, tzinfo=timezone.utc) - timedelta(days=1),
        }

        record = ImageRecord.from_ecr_detail(detail)

        assert record.tags == ()
        assert "<untagged>" in record.describe()
