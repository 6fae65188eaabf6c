"""Flow analytics: run counts, engagement rates, daily series, per-node stats."""

from collections import defaultdict
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import EventType, NodeType, RunStatus
from core.utils import utcnow
from db.models import Event, Flow, Run

SERIES_DAYS = 30

# Event type -> metric name
_METRICS = {
    EventType.ACTION_OPENED.value: "opened",
    EventType.ACTION_CLICKED.value: "clicked",
    EventType.CONVERSION.value: "conversions",
}


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _metric_for(event: Event) -> Optional[str]:
    if event.type == EventType.ACTION_DISPATCHED.value:
        return "sent" if (event.data or {}).get("success") else "failed"
    return _METRICS.get(event.type)


class AnalyticsService:
    """Read-only aggregates over runs and events of one flow."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def run_counts(self, flow_id: str) -> dict[str, int]:
        result = await self.db.execute(
            select(Run.status, func.count()).where(Run.flow_id == flow_id).group_by(Run.status)
        )
        counts = {status.value: 0 for status in RunStatus}
        counts.update({status: count for status, count in result.all()})
        counts["total"] = sum(counts.values())
        return counts

    async def flow_analytics(self, flow: Flow) -> dict[str, Any]:
        result = await self.db.execute(
            select(Event)
            .where(
                Event.flow_id == flow.id,
                Event.type.in_([EventType.ACTION_DISPATCHED.value, *_METRICS]),
            )
            .order_by(Event.timestamp)
        )
        events = result.scalars().all()

        totals: dict[str, int] = defaultdict(int)
        per_node: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        per_day: dict[str, dict[str, int]] = {}
        series_start = utcnow() - timedelta(days=SERIES_DAYS)

        for event in events:
            metric = _metric_for(event)
            if metric is None:
                continue
            totals[metric] += 1

            node_id = (event.data or {}).get("node_id")
            if node_id:
                per_node[node_id][metric] += 1

            if event.timestamp >= series_start:
                day = event.timestamp.date().isoformat()
                bucket = per_day.setdefault(
                    day, {"date": day, "sent": 0, "opened": 0, "clicked": 0, "conversions": 0}
                )
                if metric in bucket:
                    bucket[metric] += 1

        sent = totals["sent"]
        nodes = []
        for node in (flow.definition or {}).get("nodes", []):
            if node.get("type") != NodeType.ACTION.value:
                continue
            stats = per_node.get(node["id"], {})
            node_sent = stats.get("sent", 0)
            data = node.get("data") or {}
            nodes.append({
                "node_id": node["id"],
                "name": data.get("subject") or data.get("template") or f"Action {node['id']}",
                "sent": node_sent,
                "failed": stats.get("failed", 0),
                "opened": stats.get("opened", 0),
                "clicked": stats.get("clicked", 0),
                "open_rate": _rate(stats.get("opened", 0), node_sent),
                "click_rate": _rate(stats.get("clicked", 0), node_sent),
            })

        return {
            "flow_id": flow.id,
            "runs": await self.run_counts(flow.id),
            "overview": {
                "sent": sent,
                "failed": totals["failed"],
                "opened": totals["opened"],
                "clicked": totals["clicked"],
                "conversions": totals["conversions"],
                "open_rate": _rate(totals["opened"], sent),
                "click_rate": _rate(totals["clicked"], sent),
                "conversion_rate": _rate(totals["conversions"], sent),
            },
            "time_series": [per_day[day] for day in sorted(per_day)],
            "nodes": nodes,
        }
