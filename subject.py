"""Email subject synthesis for an alert batch.

The subject is built from, in order:
- "[FIRING:<n>] " when the batch has firing alerts
- "[RESOLVED:<n>] " when the batch has resolved alerts
- " <namespace>" when the common label 'namespace' is set
- "/<alertname>" after the namespace, or "<alertname>" without one
- " (k1=v1,k2=v2)" for every other common label, keys sorted

Identical batches always produce byte-identical subjects.
"""

from __future__ import annotations

from models import AlertBatch

_NAMESPACE = "namespace"
_ALERTNAME = "alertname"


def synthesize_subject(batch: AlertBatch) -> str:
    subject = ""
    ns = batch.common_labels.get(_NAMESPACE, "")
    alertname = batch.common_labels.get(_ALERTNAME, "")

    firing = len(batch.firing())
    if firing > 0:
        subject = f"[FIRING:{firing}] "

    resolved = len(batch.resolved())
    if resolved > 0:
        subject = f"{subject}[RESOLVED:{resolved}] "

    if ns:
        subject = f"{subject} {ns}"

    if alertname:
        if ns:
            subject = f"{subject}/{alertname}"
        else:
            subject = f"{subject}{alertname}"

    labels = ",".join(
        f"{key}={batch.common_labels[key]}"
        for key in sorted(batch.common_labels)
        if key not in (_NAMESPACE, _ALERTNAME)
    )
    if labels:
        subject = f"{subject} ({labels})"

    return subject
