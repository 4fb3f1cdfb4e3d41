"""
Change requests: proposed mutations that wait for review.

PENDING -> APPROVED | REJECTED
REJECTED -> RESUBMITTED (a new PENDING request links back via previous_request_id)
REJECTED -> deleted (cancelled by the submitter or an admin)
"""
