from typing import Any, Dict, Optional
import logging
import time

from beanie import PydanticObjectId
from bson.errors import InvalidId
from fastapi import APIRouter, Depends, HTTPException, status
from pymongo.errors import PyMongoError

from mongosnap.core.config import MAX_CONNECTIONS_PER_USER, SAMPLE_DATABASE_URI
from mongosnap.core.exceptions import ConnectionTestError, ForbiddenOperationError, QueryExecutionError
from mongosnap.core.logging import mask
from mongosnap.dto.base import ReponseWrapper
from mongosnap.dto.connections import (
    ConnectionIn,
    ConnectionLimits,
    ConnectionOut,
    ConnectRequest,
    DisconnectOnCloseRequest,
    GeneratedQuery,
    GenerateQueryRequest,
    QueryResult,
    RawQueryRequest,
    StructuredQueryRequest,
    TestUriRequest,
)
from mongosnap.models.connections import Connection
from mongosnap.models.queries import QueryHistory, QueryStatus
from mongosnap.models.usage import UserUsage
from mongosnap.models.users import User
from mongosnap.services import ai_query, query_executor, schema
from mongosnap.services.ai_query import AIQueryError
from mongosnap.services.database_manager import database_manager, is_valid_uri_format, parse_uri
from mongosnap.services.rate_limit import connection_limiter
from mongosnap.services.usage_service import check_ai_usage, check_query_usage
from mongosnap.utils.auth import get_current_user_doc
from mongosnap.utils.crypto import EncryptionError, decrypt, encrypt

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api/connection', tags=["Connections"])

INVALID_URI_MESSAGE = "Invalid MongoDB URI format. Database name is required."
NOT_CONNECTED_MESSAGE = "Not connected to database. Please connect first."
SAMPLE_NICKNAME = "Sample Database"


def _connection_out(connection: Connection) -> ConnectionOut:
  host, database_name = None, None
  try:
    host, database_name = parse_uri(decrypt(connection.uri))
  except EncryptionError:
    logger.warning("Stored URI for connection %s could not be decrypted", connection.id)
  return ConnectionOut(
    id=connection.id,
    nickname=connection.nickname,
    host=host,
    database_name=database_name,
    is_active=connection.is_active,
    is_connected=connection.is_connected,
    is_alive=connection.is_alive,
    is_sample=connection.is_sample,
    is_temporary=connection.is_temporary,
    last_used=connection.last_used,
    created_at=connection.created_at,
  )


async def get_connection_limits(user_id: PydanticObjectId) -> ConnectionLimits:
  total = await Connection.find({"user_id": user_id}).count()
  sample = await Connection.find({"user_id": user_id, "is_sample": True}).count()
  temporary = await Connection.find({"user_id": user_id, "is_temporary": True}).count()
  current = total - sample - temporary
  return ConnectionLimits(
    current=current,
    max=MAX_CONNECTIONS_PER_USER,
    remaining=max(0, MAX_CONNECTIONS_PER_USER - current),
    can_add_more=current < MAX_CONNECTIONS_PER_USER,
    breakdown={"regular": current, "sample": sample, "temporary": temporary, "total": total},
  )


def _parse_id(connection_id: str) -> PydanticObjectId:
  try:
    return PydanticObjectId(connection_id)
  except (InvalidId, TypeError, ValueError):
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid connection ID")


async def _get_owned_connection(connection_id: str, user: User) -> Connection:
  connection = await Connection.find_one({"_id": _parse_id(connection_id), "user_id": user.id})
  if not connection:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")
  return connection


def _decrypt_uri(connection: Connection) -> str:
  try:
    return decrypt(connection.uri)
  except EncryptionError:
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to decrypt connection URI")


def _require_database(user: User, connection: Connection):
  db = database_manager.get_database(str(user.id), str(connection.id))
  if db is None:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=NOT_CONNECTED_MESSAGE)
  return db


def _connection_failed(e: ConnectionTestError) -> HTTPException:
  return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"message": e.message, "details": e.details})


async def _create_connection(user: User, nickname: str, uri: str) -> Connection:
  limits = await get_connection_limits(user.id)
  if not limits.can_add_more:
    raise HTTPException(
      status_code=status.HTTP_429_TOO_MANY_REQUESTS,
      detail={
        "message": f"Connection limit reached. You can have up to {MAX_CONNECTIONS_PER_USER} database connections "
                   f"(excluding sample and temporary databases).",
        "connection_limits": limits.model_dump(),
      },
    )
  if not is_valid_uri_format(uri):
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_URI_MESSAGE)
  if await Connection.find_one({"user_id": user.id, "nickname": nickname}):
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A connection with this nickname already exists")

  try:
    await database_manager.test_uri(uri)
  except ConnectionTestError as e:
    raise _connection_failed(e)

  connection = Connection(user_id=user.id, nickname=nickname, uri=encrypt(uri))
  await connection.insert()
  logger.info("User %s saved connection %s to %s", user.id, connection.id, mask(uri))
  return connection


async def _open(user: User, connection: Connection) -> Dict[str, Any]:
  uri = _decrypt_uri(connection)
  try:
    info = await database_manager.connect(str(user.id), str(connection.id), uri, connection.nickname)
  except ConnectionTestError as e:
    connection.mark_disconnected()
    await connection.save()
    raise _connection_failed(e)

  # only one live connection per user
  await Connection.find({"user_id": user.id, "_id": {"$ne": connection.id}, "is_connected": True}).update(
    {"$set": {"is_active": False, "is_connected": False, "is_alive": False}})
  connection.mark_connected()
  await connection.save()
  return info


@router.get("/", response_model=ReponseWrapper[dict], description="List saved connections", status_code=status.HTTP_200_OK)
async def list_connections(user: User = Depends(get_current_user_doc)):
  try:
    connections = await Connection.find({"user_id": user.id}).sort("-last_used").to_list()
    limits = await get_connection_limits(user.id)
    return ReponseWrapper(message="Connections retrieved successfully", data={
      "connections": [_connection_out(c) for c in connections],
      "connection_limits": limits,
    })
  except Exception as e:
    raise e


@router.post("/", response_model=ReponseWrapper[ConnectionOut], description="Save a new connection", status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(connection_limiter)])
async def create_connection(data: ConnectionIn, user: User = Depends(get_current_user_doc)):
  try:
    connection = await _create_connection(user, data.nickname.strip(), data.uri.strip())
    return ReponseWrapper(message="Connection saved successfully", data=_connection_out(connection))
  except Exception as e:
    raise e


@router.post("/test-uri", response_model=ReponseWrapper[dict], description="Test a MongoDB URI without saving it", status_code=status.HTTP_200_OK,
             dependencies=[Depends(connection_limiter)])
async def test_uri(data: TestUriRequest, user: User = Depends(get_current_user_doc)):
  try:
    if not is_valid_uri_format(data.uri.strip()):
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_URI_MESSAGE)
    try:
      details = await database_manager.test_uri(data.uri.strip())
    except ConnectionTestError as e:
      raise _connection_failed(e)
    return ReponseWrapper(message="Connection test successful", data=details)
  except Exception as e:
    raise e


@router.get("/limits", response_model=ReponseWrapper[ConnectionLimits], status_code=status.HTTP_200_OK)
async def connection_limits(user: User = Depends(get_current_user_doc)):
  try:
    return ReponseWrapper(message="Connection limits retrieved successfully", data=await get_connection_limits(user.id))
  except Exception as e:
    raise e


@router.post("/sample", response_model=ReponseWrapper[dict], description="Connect to the shared sample database", status_code=status.HTTP_200_OK)
async def connect_sample(user: User = Depends(get_current_user_doc)):
  try:
    if not SAMPLE_DATABASE_URI:
      raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Sample database is not configured")
    connection = await Connection.find_one({"user_id": user.id, "is_sample": True})
    if not connection:
      connection = Connection(user_id=user.id, nickname=SAMPLE_NICKNAME, uri=encrypt(SAMPLE_DATABASE_URI), is_sample=True)
      await connection.insert()
    info = await _open(user, connection)
    return ReponseWrapper(message="Connected to sample database", data={"connection": _connection_out(connection), "info": info})
  except Exception as e:
    raise e


@router.post("/connect", response_model=ReponseWrapper[dict], description="Connect to a saved connection or a new URI", status_code=status.HTTP_200_OK,
             dependencies=[Depends(connection_limiter)])
async def connect(data: ConnectRequest, user: User = Depends(get_current_user_doc)):
  try:
    if data.connection_id:
      connection = await _get_owned_connection(str(data.connection_id), user)
    elif data.uri and data.nickname:
      connection = await _create_connection(user, data.nickname.strip(), data.uri.strip())
    else:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Either connection_id or nickname and uri are required")
    info = await _open(user, connection)
    return ReponseWrapper(message="Connected successfully", data={"connection": _connection_out(connection), "info": info})
  except Exception as e:
    raise e


@router.get("/active", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def active_connection(user: User = Depends(get_current_user_doc)):
  try:
    connections = await Connection.find({"user_id": user.id, "is_connected": True}).to_list()
    for connection in connections:
      if database_manager.is_connected(str(user.id), str(connection.id)):
        info = database_manager.get_connection_info(str(user.id), str(connection.id))
        return ReponseWrapper(message="Active connection found", data={"connection": _connection_out(connection), "info": info})
      # the process restarted or the client was cleaned up
      connection.mark_disconnected()
      await connection.save()
    return ReponseWrapper(message="No active connection", data={"connection": None})
  except Exception as e:
    raise e


@router.post("/disconnect-on-close", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def disconnect_on_close(data: DisconnectOnCloseRequest, user: User = Depends(get_current_user_doc)):
  try:
    connection = await _get_owned_connection(str(data.connection_id), user)
    await database_manager.disconnect(str(user.id), str(connection.id))
    connection.mark_disconnected()
    await connection.save()
    return ReponseWrapper(message="Disconnected", data={})
  except Exception as e:
    raise e


@router.get("/{connection_id}", response_model=ReponseWrapper[ConnectionOut], status_code=status.HTTP_200_OK)
async def get_connection(connection_id: str, user: User = Depends(get_current_user_doc)):
  try:
    connection = await _get_owned_connection(connection_id, user)
    return ReponseWrapper(message="Connection retrieved successfully", data=_connection_out(connection))
  except Exception as e:
    raise e


@router.delete("/{connection_id}", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def delete_connection(connection_id: str, user: User = Depends(get_current_user_doc)):
  try:
    connection = await _get_owned_connection(connection_id, user)
    await database_manager.disconnect(str(user.id), str(connection.id))
    await connection.delete()
    logger.info("User %s deleted connection %s", user.id, connection_id)
    return ReponseWrapper(message="Connection deleted successfully", data={})
  except Exception as e:
    raise e


@router.post("/{connection_id}/test", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK,
             dependencies=[Depends(connection_limiter)])
async def test_saved_connection(connection_id: str, user: User = Depends(get_current_user_doc)):
  try:
    connection = await _get_owned_connection(connection_id, user)
    try:
      details = await database_manager.test_uri(_decrypt_uri(connection))
    except ConnectionTestError as e:
      connection.is_alive = False
      await connection.save()
      raise _connection_failed(e)
    connection.is_alive = True
    await connection.save()
    return ReponseWrapper(message="Connection test successful", data=details)
  except Exception as e:
    raise e


@router.post("/{connection_id}/disconnect", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def disconnect(connection_id: str, user: User = Depends(get_current_user_doc)):
  try:
    connection = await _get_owned_connection(connection_id, user)
    await database_manager.disconnect(str(user.id), str(connection.id))
    connection.mark_disconnected()
    await connection.save()
    return ReponseWrapper(message="Disconnected successfully", data={})
  except Exception as e:
    raise e


@router.get("/{connection_id}/status", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def connection_status(connection_id: str, user: User = Depends(get_current_user_doc)):
  try:
    connection = await _get_owned_connection(connection_id, user)
    connected = database_manager.is_connected(str(user.id), str(connection.id))
    alive = connected and await database_manager.test_connection(str(user.id), str(connection.id))
    if connection.is_connected != connected or connection.is_alive != alive:
      connection.is_connected = connected
      connection.is_alive = alive
      await connection.save()
    return ReponseWrapper(message="Connection status retrieved", data={
      "is_connected": connected,
      "is_alive": alive,
      "info": database_manager.get_connection_info(str(user.id), str(connection.id)),
    })
  except Exception as e:
    raise e


@router.post("/{connection_id}/reconnect", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK,
             dependencies=[Depends(connection_limiter)])
async def reconnect(connection_id: str, user: User = Depends(get_current_user_doc)):
  try:
    connection = await _get_owned_connection(connection_id, user)
    await database_manager.disconnect(str(user.id), str(connection.id))
    info = await _open(user, connection)
    return ReponseWrapper(message="Reconnected successfully", data={"connection": _connection_out(connection), "info": info})
  except Exception as e:
    raise e


def _query_error(e: QueryExecutionError) -> HTTPException:
  code = status.HTTP_403_FORBIDDEN if isinstance(e, ForbiddenOperationError) else status.HTTP_400_BAD_REQUEST
  return HTTPException(status_code=code, detail=str(e))


@router.post("/{connection_id}/query", response_model=ReponseWrapper[QueryResult], description="Run a structured query", status_code=status.HTTP_200_OK)
async def run_structured_query(
  connection_id: str,
  data: StructuredQueryRequest,
  user: User = Depends(get_current_user_doc),
  usage: UserUsage = Depends(check_query_usage),
):
  try:
    connection = await _get_owned_connection(connection_id, user)
    db = _require_database(user, connection)
    try:
      parsed = query_executor.build_structured_query(
        data.collection, data.operation, data.query, data.document, data.update, data.options)
      started = time.perf_counter()
      result = await query_executor.execute_parsed(db, parsed)
    except QueryExecutionError as e:
      raise _query_error(e)
    except PyMongoError as e:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"message": "Query execution failed", "details": str(e)})

    execution_time = int((time.perf_counter() - started) * 1000)
    await usage.increment_query_execution(data.operation, connection.id)
    return ReponseWrapper(message="Query executed successfully", data=QueryResult(
      result=query_executor.to_json_safe(result),
      execution_time=execution_time,
      documents_affected=query_executor.count_documents_affected(result),
      collection=data.collection,
      operation=data.operation,
    ))
  except Exception as e:
    raise e


@router.post("/{connection_id}/execute-raw", response_model=ReponseWrapper[QueryResult], description="Run a shell-style query", status_code=status.HTTP_200_OK)
async def execute_raw_query(
  connection_id: str,
  data: RawQueryRequest,
  user: User = Depends(get_current_user_doc),
  usage: UserUsage = Depends(check_query_usage),
):
  try:
    if not data.query or not data.query.strip():
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Query string is required.")
    connection = await _get_owned_connection(connection_id, user)
    db = _require_database(user, connection)
    metadata = query_executor.extract_query_metadata(data.query)

    history = QueryHistory(
      user_id=user.id,
      connection_id=connection.id,
      query=data.query,
      natural_language=data.natural_language,
      generated_query=data.generated_query,
      status=QueryStatus.SUCCESS,
      collection_name=metadata["primary_collection"],
      operation=metadata["primary_operation"],
    )

    started = time.perf_counter()
    error: Optional[HTTPException] = None
    result = None
    try:
      parsed, result = await query_executor.execute_query(db, data.query)
      history.collection_name = parsed.collection or history.collection_name
      history.operation = parsed.operation
    except QueryExecutionError as e:
      error = _query_error(e)
    except PyMongoError as e:
      error = HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"message": "Query execution failed", "details": str(e)})

    history.execution_time = int((time.perf_counter() - started) * 1000)
    if error:
      history.status = QueryStatus.ERROR
      history.error_message = error.detail if isinstance(error.detail, str) else error.detail["details"]
      await history.insert()
      raise error

    safe_result = query_executor.to_json_safe(result)
    history.result = safe_result
    history.documents_affected = query_executor.count_documents_affected(result)
    await history.insert()
    await usage.increment_query_execution(history.operation or "unknown", connection.id)

    return ReponseWrapper(message="Query executed successfully", data=QueryResult(
      result=safe_result,
      execution_time=history.execution_time,
      documents_affected=history.documents_affected,
      collection=history.collection_name,
      operation=history.operation,
      metadata=metadata,
      history_id=history.id,
    ))
  except Exception as e:
    raise e


@router.get("/{connection_id}/schema", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def database_schema(connection_id: str, user: User = Depends(get_current_user_doc)):
  try:
    connection = await _get_owned_connection(connection_id, user)
    db = _require_database(user, connection)
    described = await schema.describe_database(db)
    return ReponseWrapper(message="Schema retrieved successfully", data=described)
  except Exception as e:
    raise e


@router.get("/{connection_id}/schema/{collection_name}", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def collection_schema(connection_id: str, collection_name: str, user: User = Depends(get_current_user_doc)):
  try:
    connection = await _get_owned_connection(connection_id, user)
    db = _require_database(user, connection)
    if collection_name not in await db.list_collection_names():
      raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Collection not found")
    described = await schema.describe_collection(db, collection_name)
    return ReponseWrapper(message="Collection schema retrieved successfully", data=described)
  except Exception as e:
    raise e


@router.post("/{connection_id}/generate-query", response_model=ReponseWrapper[GeneratedQuery], description="Turn a natural language request into a query", status_code=status.HTTP_200_OK)
async def generate_query(
  connection_id: str,
  data: GenerateQueryRequest,
  user: User = Depends(get_current_user_doc),
  usage: UserUsage = Depends(check_ai_usage),
):
  try:
    connection = await _get_owned_connection(connection_id, user)
    db = _require_database(user, connection)
    try:
      context = await schema.describe_database(db)
    except PyMongoError as e:
      logger.info("Schema context unavailable for %s: %s", connection_id, e)
      context = None

    try:
      query = await ai_query.generate_query(data.natural_language, context)
      explanation = await ai_query.explain_query(query, data.natural_language) if data.explain else None
    except AIQueryError as e:
      raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    await usage.increment_ai_generation("generate_query", connection.id)
    return ReponseWrapper(message="Query generated successfully", data=GeneratedQuery(
      query=query,
      explanation=explanation,
      collections=query_executor.extract_query_metadata(query)["collections"],
    ))
  except Exception as e:
    raise e
