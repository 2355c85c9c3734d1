"""ALB implementation of the Traffic Routing API: one listener forwarding to two weighted target groups."""

from collections.abc import Mapping
from typing import Any

from controlplane.aws.session import DEFAULT_TIMEOUT_SECONDS, create_client, translate_errors

# ALB target group weights are integers 0..999.
WEIGHT_SCALE = 100


class AlbWeightedRouting:
    """Revision ids are slot names ("blue", "green"), each mapped to a target group ARN."""

    def __init__(
        self,
        region: str,
        listener_arn: str,
        target_groups: Mapping[str, str],
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: Any = None,
    ) -> None:
        self.listener_arn = listener_arn
        self.target_groups = dict(target_groups)
        self._client = client or create_client("elbv2", region, timeout)

    def _forward_action(self, weights: Mapping[str, float]) -> dict[str, Any]:
        return {
            "Type": "forward",
            "ForwardConfig": {
                "TargetGroups": [
                    {
                        "TargetGroupArn": arn,
                        "Weight": int(round(weights.get(slot, 0.0) * WEIGHT_SCALE)),
                    }
                    for slot, arn in sorted(self.target_groups.items())
                ],
            },
        }

    def set_weights(self, weights: Mapping[str, float]) -> None:
        unknown = set(weights) - set(self.target_groups)
        if unknown:
            raise KeyError(f"no target group for revision(s): {', '.join(sorted(unknown))}")
        with translate_errors(f"modify listener {self.listener_arn}"):
            self._client.modify_listener(
                ListenerArn=self.listener_arn,
                DefaultActions=[self._forward_action(weights)],
            )

    def set_weight(self, revision_id: str, weight: float) -> None:
        weights = {slot: 0.0 for slot in self.target_groups}
        others = [slot for slot in self.target_groups if slot != revision_id]
        weights[revision_id] = weight
        for slot in others:
            weights[slot] = (1.0 - weight) / len(others)
        self.set_weights(weights)

    def get_weight(self, revision_id: str) -> float:
        arn = self.target_groups[revision_id]
        with translate_errors(f"describe listener {self.listener_arn}"):
            resp = self._client.describe_listeners(ListenerArns=[self.listener_arn])
        actions = resp["Listeners"][0].get("DefaultActions", [])
        for action in actions:
            if action.get("Type") != "forward":
                continue
            groups = action.get("ForwardConfig", {}).get("TargetGroups")
            if not groups:
                return 1.0 if action.get("TargetGroupArn") == arn else 0.0
            total = sum(g.get("Weight", 0) for g in groups)
            if total == 0:
                return 0.0
            for g in groups:
                if g["TargetGroupArn"] == arn:
                    return g.get("Weight", 0) / total
        return 0.0
