"""
QC document sign-off.

Every history record gets exactly one QCDocumentApproval, created in
PENDING_QC by the versioning ledger:

PENDING_QC -> PENDING_PM -> APPROVED
PENDING_QC | PENDING_PM -> REJECTED
PENDING_QC | PENDING_PM -> REVISION_REQUESTED -> (back to the stage it left)
"""
