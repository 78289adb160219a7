import asyncio
import dataclasses
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

import openai

from ..errors import GeocodingFailedError, InvalidInputError, ModelProtocolError, ReportError
from ..models import AdapterResult, CompareRequest, Coordinates, LocationRequest
from ..settings import Settings, get_settings
from ..sources.base import to_number
from .profiles import PROFILES, ReportProfile
from .report import assemble_report, limitations_for, missing_headings
from .state import Phase, SessionState
from .tools import GEOCODE, REVERSE, ToolRegistry, ToolSpec

logger = logging.getLogger(__name__)

# Errors a misbehaving handler may raise; adapters normally absorb their own.
HANDLER_ERRORS = (
    OSError,
    TimeoutError,
    ValueError,
    RuntimeError,
    AttributeError,
    ArithmeticError,
    LookupError,
    TypeError,
)


class ToolArgumentError(ValueError):
    pass


@dataclass
class ToolOutcome:
    """What one tool call produced, before it is folded into the session."""

    name: str
    payload: Dict[str, Any]
    call_id: str | None = None
    args: Dict[str, Any] = field(default_factory=dict)
    result: AdapterResult | None = None
    invoked: bool = False
    limitation: str | None = None

    @classmethod
    def rejected(cls, name: str, error: str, limitation: str | None = None, **kwargs: Any) -> "ToolOutcome":
        return cls(name=name, payload={"ok": False, "error": error}, limitation=limitation, **kwargs)

    def message(self) -> Dict[str, Any]:
        return {
            "role": "tool",
            "tool_call_id": self.call_id,
            "content": json.dumps(self.payload, ensure_ascii=False, default=str),
        }


def _assistant_entry(message: Any) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"role": "assistant", "content": message.content}
    tool_calls = getattr(message, "tool_calls", None) or []
    if tool_calls:
        entry["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.function.name, "arguments": call.function.arguments},
            }
            for call in tool_calls
        ]
    return entry


class ReportAgentService:
    """Drives report runs: model turns, tool dispatch and result reconciliation.

    One instance is shared by the whole app; every run gets its own
    SessionState, so nothing here is mutated per request.
    """

    def __init__(
        self,
        llm_client: Any,
        registry: ToolRegistry,
        settings: Settings | None = None,
        profiles: Mapping[str, ReportProfile] | None = None,
    ) -> None:
        self._llm = llm_client
        self._registry = registry
        self._settings = settings or get_settings()
        self._profiles = {
            name: self._with_step_budget(profile) for name, profile in (profiles or PROFILES).items()
        }

    def _with_step_budget(self, profile: ReportProfile) -> ReportProfile:
        if profile.tool_calling:
            return dataclasses.replace(profile, max_steps=self._settings.max_tool_steps)
        if profile.max_steps:
            return dataclasses.replace(profile, max_steps=self._settings.max_compose_steps)
        return profile

    def profile(self, name: str) -> ReportProfile:
        return self._profiles[name]

    def _new_state(
        self,
        profile: ReportProfile,
        coords: Coordinates | None = None,
        address: str | None = None,
        radius_m: int | None = None,
        label: str | None = None,
    ) -> SessionState:
        return SessionState.create(
            profile,
            coords=coords,
            address=address,
            radius_m=radius_m or self._settings.default_radius_m,
            max_tool_calls=self._settings.max_tool_calls_per_step,
            label=label,
        )

    def _location_state(self, profile: ReportProfile, request: LocationRequest) -> SessionState:
        if not request.has_coords and not request.has_address:
            raise InvalidInputError("Send an address or lat/lon")
        coords = Coordinates(request.lat, request.lon) if request.has_coords else None
        return self._new_state(
            profile,
            coords=coords,
            address=request.address if request.has_address else None,
            radius_m=request.radius_m,
        )

    async def analyze(self, request: LocationRequest) -> Dict[str, Any]:
        """Site analysis report; the model calls the tools itself."""
        return await self._run(self._location_state(self.profile("analyze"), request))

    async def history(self, request: LocationRequest) -> Dict[str, Any]:
        """Five-year climate and hazard history of an area."""
        return await self._run(self._location_state(self.profile("history"), request))

    async def compare(self, request: CompareRequest) -> Dict[str, Any]:
        """Side-by-side report of two locations, each gathered independently."""
        location = self.profile("location")
        children = {
            "city_a": self._new_state(location, Coordinates(request.a.lat, request.a.lon), label="City A"),
            "city_b": self._new_state(location, Coordinates(request.b.lat, request.b.lon), label="City B"),
        }
        await asyncio.gather(*(self._prefetch(child) for child in children.values()))

        state = self._new_state(self.profile("compare"))
        state.children = children
        for child in children.values():
            for entry in child.limitations:
                state.add_limitation(f"{child.label}: {entry}")
        return await self._run(state)

    async def _run(self, state: SessionState) -> Dict[str, Any]:
        """Run the loop until the report is accepted or the run fails.

        Args:
            state: Fresh SessionState for one request.

        Returns:
            Dict[str, Any]: The assembled success response.

        Raises:
            ReportError: geocoding dead end, step exhaustion or model failure.
        """
        profile = state.profile
        logger.info(
            "[%s] run started (coords=%s, address=%s)",
            profile.name,
            state.coords.to_dict() if state.coords else None,
            state.address,
        )
        try:
            if not profile.tool_calling:
                await self._prefetch(state)

            state.transcript.append({"role": "system", "content": profile.system_prompt()})
            state.transcript.append({"role": "user", "content": profile.opening(state)})

            while True:
                message = await self._request_model(state)
                tool_calls = getattr(message, "tool_calls", None) or []

                if tool_calls and profile.tool_calling:
                    state.transition(Phase.DISPATCHING_TOOLS)
                    await self._dispatch(state, tool_calls)
                    self._check_geocode_dead_end(state)
                    state.transition(Phase.COLLECTING)
                    continue

                state.transition(Phase.FINALIZING)
                report = message.content or ""
                correction = self._finalization_correction(state, report)
                if correction is None:
                    state.report_markdown = report
                    state.transition(Phase.DONE)
                    break
                state.transcript.append({"role": "user", "content": correction})
        except ReportError as e:
            state.fail()
            logger.warning("[%s] run failed after %d step(s): %s", profile.name, state.steps, e.message)
            raise

        logger.info(
            "[%s] report accepted after %d step(s), %d limitation(s)",
            profile.name,
            state.steps,
            len(state.limitations),
        )
        response = assemble_report(state)
        if self._settings.debug:
            response["debug"] = {"steps": state.steps, "tool_calls": state.tool_log}
        return response

    async def _request_model(self, state: SessionState) -> Any:
        state.begin_model_turn()
        profile = state.profile
        kwargs: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": state.transcript.to_list(),
            "temperature": self._settings.temperature,
        }
        if profile.tool_calling:
            kwargs["tools"] = self._registry.schemas(profile.declared_tools)
            kwargs["tool_choice"] = "auto"

        logger.debug("[%s] model turn %d/%d", profile.name, state.steps, profile.max_steps)
        try:
            completion = await self._llm.chat.completions.create(**kwargs)
        except openai.APIError as e:
            raise ModelProtocolError(f"Model request failed: {e}") from e

        choices = getattr(completion, "choices", None) or []
        message = choices[0].message if choices else None
        if message is None:
            raise ModelProtocolError("The model returned no message")
        state.transcript.append(_assistant_entry(message))
        return message

    def _finalization_correction(self, state: SessionState, report: str) -> str | None:
        missing = state.missing_tools()
        if missing:
            logger.info("[%s] re-prompting, mandatory tools missing: %s", state.profile.name, missing)
            hint = f" Use lat={state.coords.lat}, lon={state.coords.lon}." if state.coords else ""
            return (
                f"Mandatory tools are still missing ({', '.join(missing)}). "
                f"Call them before writing the final report.{hint}"
            )

        absent = missing_headings(report, state.profile.required_headings)
        if absent:
            logger.info("[%s] re-prompting, headings missing: %s", state.profile.name, absent)
            return state.profile.format_correction()
        return None

    def _check_geocode_dead_end(self, state: SessionState) -> None:
        if state.geocode_required and state.coords is None and state.geocode_failed:
            logger.warning("[%s] address could not be geocoded: %s", state.profile.name, state.address)
            raise GeocodingFailedError("Could not geocode the address. Check the text entered.")

    async def _prefetch(self, state: SessionState) -> None:
        """Gather a single-shot profile's data through the regular invoke path."""
        if state.geocode_required:
            outcome = await self._invoke(state, GEOCODE, {"address": state.address})
            self._reconcile(state, outcome)
            self._check_geocode_dead_end(state)

        for stage in state.profile.prefetch:
            outcomes = await asyncio.gather(
                *(self._invoke(state, planned.name, planned.resolve(state)) for planned in stage)
            )
            for outcome in outcomes:
                self._reconcile(state, outcome)

    async def _dispatch(self, state: SessionState, tool_calls: List[Any]) -> None:
        """Run one batch of model tool calls and answer each by its call id.

        Geocoding runs first so the rest of the batch can use the resolved
        coordinates; the remaining calls are independent and run concurrently.
        """
        names = [call.function.name for call in tool_calls]
        logger.info("[%s] dispatching %d tool call(s): %s", state.profile.name, len(names), ", ".join(names))

        outcomes: Dict[int, ToolOutcome] = {}
        for index, call in enumerate(tool_calls):
            if call.function.name == GEOCODE:
                outcomes[index] = await self._execute(state, call)
                self._reconcile(state, outcomes[index])

        pending = [(index, call) for index, call in enumerate(tool_calls) if index not in outcomes]
        results = await asyncio.gather(*(self._execute(state, call) for _, call in pending))
        for (index, _), outcome in zip(pending, results):
            outcomes[index] = outcome
            self._reconcile(state, outcome)

        for index in range(len(tool_calls)):
            state.transcript.append(outcomes[index].message())

    async def _execute(self, state: SessionState, call: Any) -> ToolOutcome:
        name = call.function.name
        try:
            raw_args = json.loads(call.function.arguments or "{}")
            if not isinstance(raw_args, dict):
                raise ValueError("arguments must be a JSON object")
        except ValueError as e:
            logger.warning("Invalid tool arguments for %s: %s", name, e)
            return ToolOutcome.rejected(
                name,
                f"Invalid JSON arguments: {e}",
                limitation=f"Invalid arguments for {name}; the call was ignored.",
                call_id=call.id,
            )
        outcome = await self._invoke(state, name, raw_args)
        outcome.call_id = call.id
        return outcome

    async def _invoke(self, state: SessionState, name: str, raw_args: Dict[str, Any]) -> ToolOutcome:
        spec = self._registry.get(name)
        if spec is None:
            logger.error(f"Tool {name} not found in registry")
            return ToolOutcome.rejected(
                name,
                f"Unknown tool: {name}",
                limitation=f"Unknown tool requested by the model: {name}.",
            )

        if name == GEOCODE:
            return await self._invoke_geocode(state, spec, raw_args)

        if spec.needs_coords and state.coords is None and state.geocode_required:
            return ToolOutcome.rejected(
                name,
                "Coordinates are not known yet; call geocode_address first.",
            )

        try:
            args = self._prepare_args(state, spec, raw_args)
        except ToolArgumentError as e:
            return ToolOutcome(
                name=name,
                payload={"ok": False, "error": str(e)},
                result=AdapterResult.failure(name, str(e)),
                invoked=True,
            )
        return await self._call_handler(spec, args)

    async def _invoke_geocode(self, state: SessionState, spec: ToolSpec, raw_args: Dict[str, Any]) -> ToolOutcome:
        if state.coords_from_user:
            return ToolOutcome.rejected(
                spec.name,
                "Coordinates were provided by the user; geocoding skipped.",
                limitation=f"{spec.label}: skipped because coordinates were provided.",
            )

        previous = state.tool_results.get(GEOCODE)
        if state.coords is not None and previous is not None and previous.ok:
            logger.debug("Address already resolved; returning the stored geocoding result")
            return ToolOutcome(name=spec.name, payload=previous.to_payload())

        address = raw_args.get("address")
        if not isinstance(address, str) or not address.strip():
            address = state.address
        args: Dict[str, Any] = {"address": address.strip() if address else ""}
        if self._settings.geocode_country_code:
            args["country_code"] = self._settings.geocode_country_code
        return await self._call_handler(spec, args)

    async def _call_handler(self, spec: ToolSpec, args: Dict[str, Any]) -> ToolOutcome:
        logger.debug(f"Executing tool {spec.name} with {args}")
        try:
            result = await spec.handler(**args)
        except HANDLER_ERRORS as e:
            logger.error("Error executing tool %s: %s", spec.name, e)
            result = AdapterResult.failure(spec.name, f"{type(e).__name__}: {e}")
        return ToolOutcome(name=spec.name, payload=result.to_payload(), args=args, result=result, invoked=True)

    def _prepare_args(self, state: SessionState, spec: ToolSpec, raw_args: Dict[str, Any]) -> Dict[str, Any]:
        """Coerce declared parameters, then fill from session coords, request radius and defaults."""
        args: Dict[str, Any] = {}
        for key, schema in spec.properties.items():
            value = raw_args.get(key)
            kind = schema.get("type")
            if kind in ("number", "integer"):
                value = to_number(value)
                if value is not None and kind == "integer":
                    value = int(round(value))
            elif kind == "string":
                value = value.strip() if isinstance(value, str) and value.strip() else None

            if value is None:
                if key in ("lat", "lon") and state.coords is not None:
                    value = getattr(state.coords, key)
                elif key == "radius_m":
                    value = state.radius_m
                else:
                    value = spec.defaults.get(key)

            if value is not None and key in spec.clamps:
                low, high = spec.clamps[key]
                value = type(value)(min(max(value, low), high))
            if value is not None:
                args[key] = value

        if spec.needs_coords:
            lat, lon = args.get("lat"), args.get("lon")
            if lat is None or lon is None or not (-90 <= lat <= 90) or not (-180 <= lon <= 180):
                raise ToolArgumentError(f"Invalid or missing lat/lon for {spec.name}")
        return args

    def _reconcile(self, state: SessionState, outcome: ToolOutcome) -> None:
        """Fold one outcome into the session: used flags, results, coords, limitations."""
        state.tool_log.append({"name": outcome.name, "args": outcome.args, "ok": outcome.payload.get("ok")})
        if outcome.invoked:
            state.mark_used(outcome.name)
        if outcome.limitation:
            state.add_limitation(outcome.limitation)

        result = outcome.result
        if result is None:
            return
        state.record_result(outcome.name, result)

        if outcome.name == GEOCODE:
            if result.ok:
                state.coords = Coordinates(result.get("lat"), result.get("lon"))
                state.coords.merge_place(result.get("display_name"), result.get("address"))
                logger.info("Geocoded %r to %s,%s", state.address, state.coords.lat, state.coords.lon)
            else:
                state.geocode_failed = True
        else:
            lat, lon = outcome.args.get("lat"), outcome.args.get("lon")
            if state.coords is None and lat is not None and lon is not None:
                state.coords = Coordinates(lat, lon)
            if outcome.name == REVERSE and result.ok and state.coords is not None:
                state.coords.merge_place(result.get("display_name"), result.get("address"), authoritative=True)

        if not result.ok:
            logger.warning("Tool %s failed: %s", outcome.name, result.error)
        elif result.fallback_used:
            logger.info("Tool %s answered through its fallback", outcome.name)

        spec = self._registry.get(outcome.name)
        label = spec.label if spec else outcome.name
        for entry in limitations_for(label, result):
            state.add_limitation(entry)


__all__ = ["ReportAgentService", "ToolOutcome"]
