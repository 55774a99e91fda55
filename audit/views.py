from django.contrib.admin.views.decorators import staff_member_required
from django.http import JsonResponse
from django.views.decorators.http import require_GET

from .recorder import history_for_actor, history_for_entity


def _limit(request, default):
    try:
        return max(1, min(int(request.GET.get("limit", default)), 500))
    except ValueError:
        return default


@require_GET
@staff_member_required
def entity_history_view(request, table: str, entity_id: str):
    """Audit trail of one row, newest first."""
    records = [r.as_dict() for r in history_for_entity(table, entity_id)[:_limit(request, 100)]]
    return JsonResponse({"success": True, "data": records, "total": len(records)})


@require_GET
@staff_member_required
def actor_history_view(request, actor_id: int):
    records = [r.as_dict() for r in history_for_actor(actor_id, limit=_limit(request, 50))]
    return JsonResponse({"success": True, "data": records, "total": len(records)})
