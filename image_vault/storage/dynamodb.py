import boto3
from boto3.dynamodb.conditions import Key
from typing import Optional, Dict, Any, List
from botocore.exceptions import BotoCoreError, ClientError
from image_vault.settings import Settings, settings as default_settings
from image_vault.exceptions import UpstreamException
import logging

log = logging.getLogger(__name__)

USER_INDEX = "UserIndex"

# -------------------------
# DynamoDB Service
# -------------------------
class DynamoDBService:
    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        session = boto3.session.Session(region_name=self.config.aws_region)
        kwargs = {
            "aws_access_key_id": self.config.aws_access_key_id,
            "aws_secret_access_key": self.config.aws_secret_access_key,
        }
        if self.config.aws_endpoint_url:
            kwargs["endpoint_url"] = self.config.aws_endpoint_url

        self.resource = session.resource("dynamodb", **kwargs)
        self.table = self.resource.Table(self.config.dynamodb_table)
        log.info("Initialized DynamoDB resource for table %s", self.config.dynamodb_table)

        # Ensure table exists at initialization
        if self.config.aws_access_key_id and self.config.aws_secret_access_key:
            self.ensure_table()

    # Refer here: https://boto3.amazonaws.com/v1/documentation/api/latest/reference/services/dynamodb/client/create_table.html
    def ensure_table(self):
        try:
            self.table.load()
        except ClientError:
            self.table = self.resource.create_table(
                TableName=self.config.dynamodb_table,
                KeySchema=[{"AttributeName": "image_id", "KeyType": "HASH"}],
                AttributeDefinitions=[
                    {"AttributeName": "image_id", "AttributeType": "S"},
                    {"AttributeName": "user_id", "AttributeType": "S"},
                    {"AttributeName": "created_at", "AttributeType": "S"},
                ],
                GlobalSecondaryIndexes=[
                    {
                        "IndexName": USER_INDEX,
                        "KeySchema": [
                            {"AttributeName": "user_id", "KeyType": "HASH"},
                            {"AttributeName": "created_at", "KeyType": "RANGE"},
                        ],
                        "Projection": {"ProjectionType": "ALL"},
                        "ProvisionedThroughput": {"ReadCapacityUnits": 5, "WriteCapacityUnits": 5},
                    }
                ],
                ProvisionedThroughput={"ReadCapacityUnits": 5, "WriteCapacityUnits": 5},
            )
            self.table.wait_until_exists()
            log.info("Created table %s", self.config.dynamodb_table)

    def put_metadata(self, item: Dict[str, Any]):
        try:
            self.table.put_item(Item=item)
        except (BotoCoreError, ClientError) as e:
            log.error("DynamoDB put_metadata failed for %s: %s", item.get("image_id"), e)
            raise UpstreamException(f"Failed to save image metadata: {e}", error="Failed to save image metadata")
        log.debug("Inserted metadata %s", item.get("image_id"))

    def get_metadata(self, image_id: str) -> Optional[Dict[str, Any]]:
        try:
            resp = self.table.get_item(Key={"image_id": image_id})
        except (BotoCoreError, ClientError) as e:
            log.error("DynamoDB get_metadata failed for %s: %s", image_id, e)
            raise UpstreamException(f"Failed to get image metadata: {e}")
        return resp.get("Item")

    def update_metadata(self, image_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
            Partially updates an existing item; returns the updated item.
            Returns None when the item does not exist.
        """
        names = {f"#f{i}": name for i, name in enumerate(fields)}
        values = {f":v{i}": value for i, value in enumerate(fields.values())}
        expression = "SET " + ", ".join(f"#f{i} = :v{i}" for i in range(len(fields)))
        try:
            resp = self.table.update_item(
                Key={"image_id": image_id},
                UpdateExpression=expression,
                ConditionExpression="attribute_exists(image_id)",
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return None
            log.error("DynamoDB update_metadata failed for %s: %s", image_id, e)
            raise UpstreamException(f"Failed to update image metadata: {e}")
        except BotoCoreError as e:
            log.error("DynamoDB update_metadata failed for %s: %s", image_id, e)
            raise UpstreamException(f"Failed to update image metadata: {e}")
        log.debug("Updated metadata %s: %s", image_id, ", ".join(fields))
        return resp.get("Attributes")

    def delete_metadata(self, image_id: str):
        try:
            self.table.delete_item(Key={"image_id": image_id})
        except (BotoCoreError, ClientError) as e:
            log.error("DynamoDB delete_metadata failed for %s: %s", image_id, e)
            raise UpstreamException(f"Failed to delete image metadata: {e}")
        log.debug("Deleted metadata %s", image_id)

    def query_by_user(self, user_id: str) -> List[Dict[str, Any]]:
        """All items owned by `user_id`, newest first."""
        query_kwargs = {
            "IndexName": USER_INDEX,
            "KeyConditionExpression": Key("user_id").eq(user_id),
            "ScanIndexForward": False,
        }
        items = []
        try:
            while True:
                resp = self.table.query(**query_kwargs)
                items.extend(resp.get("Items", []))
                last_key = resp.get("LastEvaluatedKey")
                if not last_key:
                    break
                query_kwargs["ExclusiveStartKey"] = last_key
        except (BotoCoreError, ClientError) as e:
            log.error("DynamoDB query_by_user failed for %s: %s", user_id, e)
            raise UpstreamException(f"Failed to fetch images: {e}")
        return items

    def close(self):
        self.resource.meta.client.close()
        log.info("Closed DynamoDB resource")
