import os, json, boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError
from ..errors import StorageError
from ..schemas.witness import WitnessRecord

_endpoint = os.getenv("MINIO_ENDPOINT")
_secure = os.getenv("MINIO_SECURE", "false").lower() == "true"
if _endpoint and not _endpoint.startswith("http"):
    _endpoint = f"{'https' if _secure else 'http'}://{_endpoint}"

_s3 = boto3.client(
    "s3",
    endpoint_url=_endpoint,
    aws_access_key_id=os.getenv("MINIO_ACCESS_KEY"),
    aws_secret_access_key=os.getenv("MINIO_SECRET_KEY"),
    config=Config(signature_version="s3v4"),
)
_BUCKET = os.getenv("WITNESS_ARCHIVE_BUCKET", "")

def archive_enabled() -> bool:
    return bool(_BUCKET)

def _key(record: WitnessRecord) -> str:
    return f"witnesses/{record.call_id}/{record.id}.json"

def put_json(key: str, data: dict):
    try:
        _s3.put_object(Bucket=_BUCKET, Key=key, Body=json.dumps(data).encode("utf-8"), ContentType="application/json")
    except (BotoCoreError, ClientError) as e:
        raise StorageError(f"archive write failed for {key}: {e}") from e

def archive_witness(record: WitnessRecord) -> str:
    """Write the finished witness record to the archive bucket; returns the object key."""
    key = _key(record)
    put_json(key, record.model_dump(mode="json", by_alias=True))
    return key
