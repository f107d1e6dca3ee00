from datetime import timezone

import pytest

from src.modules.imagery.models import ImageRecord, TransformationJob, utc_now


@pytest.mark.parametrize("model,column", [
    (ImageRecord, "created_at"),
    (ImageRecord, "updated_at"),
    (ImageRecord, "last_transformed_at"),
    (TransformationJob, "created_at"),
    (TransformationJob, "updated_at"),
    (TransformationJob, "started_at"),
    (TransformationJob, "completed_at"),
])
def test_timestamp_columns_are_timezone_aware(model, column):
    assert model.__table__.c[column].type.timezone is True


def test_default_timestamps_carry_utc():
    record = ImageRecord(
        owner_id="user-1",
        original_name="cat.png",
        filename="cat.png",
        mime_type="image/png",
        size=1,
        path="uploads/cat.png",
    )

    assert record.created_at.tzinfo is timezone.utc
    assert utc_now().tzinfo is timezone.utc


def test_insert_and_status_moves_store_timestamps(container, registered_image):
    assert container.images.try_acquire_processing(registered_image.id)
    container.images.complete(registered_image.id, {"transformations": {}, "output": {}})

    record = container.images.find_by_id(registered_image.id)
    assert record.created_at is not None
    assert record.last_transformed_at is not None
    assert record.to_response_dict()["lastTransformedAt"]
