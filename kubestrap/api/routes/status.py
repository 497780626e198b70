from dataclasses import asdict

from fastapi import APIRouter, HTTPException

from kubestrap.config import get_config
from kubestrap.modules.report import load_report

router = APIRouter()


def _last_report():
    report = load_report(get_config().cluster.report_path)
    if report is None:
        raise HTTPException(status_code=404, detail="No bootstrap run has been recorded")
    return report


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/status")
def cluster_status():
    return asdict(_last_report())


@router.get("/status/nodes/{node_id}")
def node_status(node_id: str):
    report = _last_report()
    for node in report.nodes:
        if node['id'] == node_id:
            return node
    raise HTTPException(status_code=404, detail=f"Node '{node_id}' not found")
