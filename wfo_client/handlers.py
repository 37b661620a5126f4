"""
Per-type dispatch for outbox actions.

Each action type is planned into one primary remote write, which decides
success or failure, followed by an ordered chain of best-effort side effects
whose failures are logged and reported but never fail the action.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from wfo_client.remote_api import RemoteApiError, SupabaseClient
from wfo_shared.logging_config import get_sync_logger
from wfo_shared.models import ActionType, ApiResponse, OutboxAction
from wfo_shared.utils import format_date, isoformat, parse_datetime, utc_now

logger = get_sync_logger()


@dataclass
class SideEffect:
    """A secondary write; raising or returning an error marks it failed"""
    name: str
    run: Callable[[], Optional[ApiResponse]]


@dataclass
class ActionEffects:
    primary: Callable[[], None]
    side_effects: List[SideEffect] = field(default_factory=list)


@dataclass
class HandlerResult:
    success: bool
    error: Optional[str] = None
    side_effect_errors: List[str] = field(default_factory=list)


def _require(response: ApiResponse, what: str) -> ApiResponse:
    """Raise if a primary write came back with an error"""
    if not response.ok:
        raise RemoteApiError(f"{what}: {response.error}", response.status_code)
    return response


def _compact(row: Dict[str, Any]) -> Dict[str, Any]:
    """Drop unset columns so they don't overwrite server values"""
    return {key: value for key, value in row.items() if value is not None}


def _complete_route_stop(api: SupabaseClient, route_stop_id: str, departure_time: str) -> ApiResponse:
    return api.update('route_stops', {
        'status': 'completed',
        'actual_departure_time': departure_time,
    }, {'id': route_stop_id})


# Planners: OutboxAction -> ActionEffects

def plan_form_response(action: OutboxAction, api: SupabaseClient, now: datetime) -> ActionEffects:
    """Always a fresh insert; multiple submissions per user and form are allowed."""
    data = action.data
    user_id = data.get('user_id') or action.user_id
    location = data.get('location') or {}

    row = _compact({
        'form_id': data.get('form_id'),
        'organization_id': data.get('organization_id') or action.organization_id,
        'user_id': user_id,
        'respondent_id': user_id,
        'responses': data.get('responses'),
        'submitted_at': data.get('timestamp') or action.timestamp,
        'status': 'submitted',
        'location_latitude': location.get('latitude'),
        'location_longitude': location.get('longitude'),
        'location_accuracy': location.get('accuracy'),
        'location_timestamp': location.get('timestamp'),
    })

    def primary():
        result = api.insert('form_responses', row)
        if result.ok:
            return
        message = result.error or ''
        # Older schemas only have respondent_id
        if 'column' in message or 'user_id' in message:
            logger.info("Form response insert rejected, retrying with respondent_id only")
            fallback = {k: v for k, v in row.items() if k != 'user_id'}
            _require(api.insert('form_responses', fallback), 'Form response insert')
            return
        _require(result, 'Form response insert')

    side_effects = []
    visit_id = data.get('visit_id')
    if visit_id:
        submitted_at = row['submitted_at']

        def mark_visit():
            return api.update('outlet_visits', {
                'form_completed': True,
                'check_out_time': submitted_at,
            }, {'id': visit_id})

        def complete_stop():
            visit = api.select_single('outlet_visits', columns='route_stop_id', filters={'id': visit_id})
            if not visit.ok:
                return visit
            route_stop_id = (visit.data or {}).get('route_stop_id')
            if not route_stop_id:
                return None
            return _complete_route_stop(api, route_stop_id, submitted_at)

        side_effects = [
            SideEffect('mark outlet visit form-completed', mark_visit),
            SideEffect('complete route stop for visit', complete_stop),
        ]

    return ActionEffects(primary=primary, side_effects=side_effects)


def plan_attendance(action: OutboxAction, api: SupabaseClient, now: datetime) -> ActionEffects:
    """Attendance, check-in and check-out are all one upsert keyed by (user, date)."""
    data = action.data
    day = data.get('date')
    if not day:
        moment = parse_datetime(data.get('check_in_time') or data.get('check_out_time') or action.timestamp)
        day = format_date(moment) if moment else None

    row = _compact({
        'user_id': data.get('user_id') or action.user_id,
        'organization_id': data.get('organization_id') or action.organization_id,
        'date': day,
        'status': data.get('status'),
        'check_in_time': data.get('check_in_time'),
        'check_out_time': data.get('check_out_time'),
        'location': data.get('location'),
        'notes': data.get('notes'),
    })

    def primary():
        _require(api.upsert('attendance', row, on_conflict='user_id,date'), 'Attendance upsert')

    return ActionEffects(primary=primary)


def plan_outlet_visit(action: OutboxAction, api: SupabaseClient, now: datetime) -> ActionEffects:
    """Update the visit when its id is known, otherwise insert a new one."""
    data = action.data
    visit_id = data.get('visit_id')
    form_completed = bool(data.get('form_completed'))

    if visit_id:
        values = _compact({
            'form_completed': form_completed,
            'check_out_time': data.get('check_out_time'),
            'notes': data.get('notes'),
            'location': data.get('location'),
        })

        def primary():
            _require(api.update('outlet_visits', values, {'id': visit_id}), 'Outlet visit update')
    else:
        row = _compact({
            'outlet_id': data.get('outlet_id'),
            'user_id': data.get('user_id') or action.user_id,
            'organization_id': data.get('organization_id') or action.organization_id,
            'check_in_time': data.get('check_in_time'),
            'check_out_time': data.get('check_out_time'),
            'form_completed': form_completed,
            'route_stop_id': data.get('route_stop_id'),
            'notes': data.get('notes'),
            'location': data.get('location'),
        })

        def primary():
            _require(api.insert('outlet_visits', row), 'Outlet visit insert')

    side_effects = []
    route_stop_id = data.get('route_stop_id')
    if form_completed and route_stop_id:
        departure_time = data.get('check_out_time') or isoformat(now)
        side_effects.append(SideEffect(
            'complete route stop',
            lambda: _complete_route_stop(api, route_stop_id, departure_time)
        ))

    return ActionEffects(primary=primary, side_effects=side_effects)


def plan_leave_request(action: OutboxAction, api: SupabaseClient, now: datetime) -> ActionEffects:
    """Insert with status forced to pending; approval happens online only."""
    data = action.data
    row = _compact({
        'employee_id': data.get('employee_id') or data.get('user_id') or action.user_id,
        'organization_id': data.get('organization_id') or action.organization_id,
        'leave_type': data.get('type') or data.get('leave_type'),
        'start_date': data.get('start_date'),
        'end_date': data.get('end_date'),
        'reason': data.get('reason'),
    })
    row['status'] = 'pending'

    def primary():
        _require(api.insert('leave_requests', row), 'Leave request insert')

    return ActionEffects(primary=primary)


PLANNERS: Dict[ActionType, Callable[[OutboxAction, SupabaseClient, datetime], ActionEffects]] = {
    ActionType.FORM_RESPONSE: plan_form_response,
    ActionType.ATTENDANCE: plan_attendance,
    ActionType.CHECK_IN: plan_attendance,
    ActionType.CHECK_OUT: plan_attendance,
    ActionType.OUTLET_VISIT: plan_outlet_visit,
    ActionType.LEAVE_REQUEST: plan_leave_request,
}

_unhandled = set(ActionType) - set(PLANNERS)
if _unhandled:
    raise RuntimeError(f"No sync handler for action types: {sorted(t.value for t in _unhandled)}")


class ActionDispatcher:
    """Runs the planned effects of one action against the remote API"""

    def __init__(self, api: SupabaseClient, clock: Optional[Callable[[], datetime]] = None):
        self.api = api
        self._clock = clock or utc_now

    def dispatch(self, action: OutboxAction) -> HandlerResult:
        """Perform the remote writes for an action; never raises."""
        try:
            effects = PLANNERS[action.type](action, self.api, self._clock())
            effects.primary()
        except Exception as e:
            return HandlerResult(success=False, error=str(e) or e.__class__.__name__)

        return HandlerResult(success=True, side_effect_errors=self._run_side_effects(action, effects.side_effects))

    def _run_side_effects(self, action: OutboxAction, side_effects: List[SideEffect]) -> List[str]:
        """Run the chain in order, stopping at the first failure"""
        errors: List[str] = []
        for index, effect in enumerate(side_effects):
            try:
                response = effect.run()
                if response is not None and not response.ok:
                    raise RemoteApiError(response.error, response.status_code)
            except Exception as e:
                message = f"{effect.name}: {e}"
                logger.error(f"Side effect failed for {action.type.value} ({action.id}): {message}")
                skipped = [s.name for s in side_effects[index + 1:]]
                if skipped:
                    logger.warning(f"Skipping dependent side effects: {', '.join(skipped)}")
                errors.append(message)
                break
        return errors
