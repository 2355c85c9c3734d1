"""DynamoDB-backed state store with optimistic concurrency on ``version``."""

import json
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from controlplane.aws.session import create_client, error_code, translate, translate_errors
from controlplane.errors import StaleWriteError


class DynamoDbStateStore:
    """Each record is one item: ``id`` (hash key), numeric ``version``, JSON ``body``.

    The table is provisioned by the controller's Pulumi program
    (controlplane.provisioning.state_table).
    """

    def __init__(self, table_name: str, region: str, client: Any = None) -> None:
        self.table_name = table_name
        self._client = client or create_client("dynamodb", region)

    def get(self, key: str) -> dict[str, Any] | None:
        with translate_errors(f"dynamodb get {key}"):
            resp = self._client.get_item(
                TableName=self.table_name,
                Key={"id": {"S": key}},
                ConsistentRead=True,
            )
        item = resp.get("Item")
        if not item:
            return None
        record: dict[str, Any] = json.loads(item["body"]["S"])
        record["version"] = int(item["version"]["N"])
        return record

    def put(self, key: str, record: dict[str, Any], expected_version: int) -> int:
        new_version = expected_version + 1
        body = {k: v for k, v in record.items() if k != "version"}
        item = {
            "id": {"S": key},
            "version": {"N": str(new_version)},
            "state": {"S": str(record.get("state", ""))},
            "body": {"S": json.dumps(body, sort_keys=True)},
        }
        if expected_version == 0:
            condition: dict[str, Any] = {"ConditionExpression": "attribute_not_exists(id)"}
        else:
            condition = {
                "ConditionExpression": "version = :expected",
                "ExpressionAttributeValues": {":expected": {"N": str(expected_version)}},
            }
        try:
            self._client.put_item(TableName=self.table_name, Item=item, **condition)
        except ClientError as e:
            if error_code(e) == "ConditionalCheckFailedException":
                current = self.get(key)
                raise StaleWriteError(
                    key, expected_version, current["version"] if current else None
                ) from e
            raise translate(f"dynamodb put {key}", e) from e
        except BotoCoreError as e:
            raise translate(f"dynamodb put {key}", e) from e
        return new_version
