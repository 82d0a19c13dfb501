"""
Replicated data store used by the disaster-recovery drill as a
write-then-cross-region-read probe.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional

import boto3

from ..errors import PlatformError
from ..utils.aws import call_aws

logger = logging.getLogger(__name__)


class ReplicatedDataStore(ABC):
    """A key/value table replicated between regions"""

    @abstractmethod
    async def put(self, region_id: str, item: Dict[str, str]) -> None:
        """Write `item` (must contain `id`) in a region"""

    @abstractmethod
    async def get(self, region_id: str, key: str, consistent: bool = False) -> Optional[Dict[str, str]]:
        """Read an item from a region; None when absent"""

    @abstractmethod
    async def delete(self, region_id: str, key: str) -> None:
        """Delete an item in a region"""


class DynamoDBDataStore(ReplicatedDataStore):
    """DynamoDB global table with string attributes keyed by `id`"""

    def __init__(
        self,
        table_name: str,
        regions: Mapping[str, str],
        session: Optional[boto3.session.Session] = None
    ):
        """
        Args:
            table_name: Global table name
            regions: Region id -> AWS region name
            session: boto3 session (default: new session)
        """
        session = session or boto3.session.Session()
        self.table_name = table_name
        self._clients = {
            region_id: session.client('dynamodb', region_name=aws_region)
            for region_id, aws_region in regions.items()
        }

    def _client(self, region_id: str):
        try:
            return self._clients[region_id]
        except KeyError:
            raise PlatformError(f"No DynamoDB client for region {region_id}")

    async def put(self, region_id: str, item: Dict[str, str]) -> None:
        await call_aws(
            self._client(region_id).put_item,
            TableName=self.table_name,
            Item={name: {'S': str(value)} for name, value in item.items()}
        )

    async def get(self, region_id: str, key: str, consistent: bool = False) -> Optional[Dict[str, str]]:
        response = await call_aws(
            self._client(region_id).get_item,
            TableName=self.table_name,
            Key={'id': {'S': key}},
            ConsistentRead=consistent
        )
        item = response.get('Item')
        if not item:
            return None
        return {name: value.get('S', '') for name, value in item.items()}

    async def delete(self, region_id: str, key: str) -> None:
        await call_aws(
            self._client(region_id).delete_item,
            TableName=self.table_name,
            Key={'id': {'S': key}}
        )
