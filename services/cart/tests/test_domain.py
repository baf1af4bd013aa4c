from shopping_cart.domain import Item, ItemStatus, JobStatus, can_retry


def test_can_retry_below_limit(make_job):
    job = make_job(attempts=2)
    assert can_retry(job, 3)
    assert job.can_retry(3)


def test_cannot_retry_at_limit(make_job):
    assert not can_retry(make_job(attempts=3), 3)
    assert not can_retry(make_job(attempts=4), 3)


def test_completed_job_is_never_retried(make_job):
    job = make_job(attempts=0)
    job.status = JobStatus.COMPLETED
    assert not can_retry(job, 3)


def test_failed_job_below_limit_can_retry(make_job):
    job = make_job(attempts=1)
    job.status = JobStatus.FAILED
    assert can_retry(job, 3)


def test_potentially_available_statuses():
    available = {
        status
        for status in ItemStatus
        if Item(name="phone", quantity=1, status=status).is_available
    }
    assert available == {ItemStatus.PENDING, ItemStatus.AVAILABILITY_CHECK, ItemStatus.AVAILABLE}


def test_unknown_job_type_still_decodes(make_job):
    job = make_job(job_type="GIFT_WRAP")
    decoded = type(job).model_validate_json(job.model_dump_json())
    assert decoded.job_type == "GIFT_WRAP"
