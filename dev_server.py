import uuid
from typing import Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Response
from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from entities import CHILDREN, EntityType

_CHILD_ORDER = {
    EntityType.WORKOUTS: "dayOfWeek",
    EntityType.WORKOUT_EXERCISES: "orderIndex",
    EntityType.LOG_SETS: "setNumber",
}


class ReferenceAPI:
    """In-memory implementation of the workout REST contract.

    Used for local development and as the server in the test suite. Client
    supplied ids are accepted and a repeated create returns the stored record.
    """

    def __init__(self, token: Optional[str] = None, prefix: str = "") -> None:
        self.token = token
        self.prefix = prefix.rstrip("/")
        self.records: dict[EntityType, dict[str, dict]] = {et: {} for et in EntityType}
        self.requests: list[tuple[str, str]] = []
        self.app = FastAPI(
            title="Kraftlog reference API",
            description="In-memory REST API for workout plans and session logs",
        )
        self._setup_routes()

    def _check_auth(self, authorization: Optional[str] = Header(default=None)) -> None:
        if self.token is not None and authorization != f"Bearer {self.token}":
            raise HTTPException(status_code=401, detail="invalid token")

    def _require(self, entity_type: EntityType, entity_id: str) -> dict:
        record = self.records[entity_type].get(entity_id)
        if record is None:
            raise HTTPException(
                status_code=404, detail=f"{entity_type.value} {entity_id} not found"
            )
        return record

    def _nested(self, entity_type: EntityType, record: dict) -> dict:
        out = dict(record)
        if entity_type in CHILDREN:
            child_type, attr, parent_col = CHILDREN[entity_type]
            parent_key = to_camel(parent_col)
            children = [
                self._nested(child_type, r)
                for r in self.records[child_type].values()
                if r.get(parent_key) == record["id"]
            ]
            order_key = _CHILD_ORDER.get(child_type)
            if order_key:
                children.sort(key=lambda c: (c.get(order_key) is None, c.get(order_key) or 0))
            out[to_camel(attr)] = children
        return out

    def _cascade_delete(self, entity_type: EntityType, entity_id: str) -> None:
        self.records[entity_type].pop(entity_id, None)
        if entity_type not in CHILDREN:
            return
        child_type, _attr, parent_col = CHILDREN[entity_type]
        parent_key = to_camel(parent_col)
        for child_id in [
            cid
            for cid, r in self.records[child_type].items()
            if r.get(parent_key) == entity_id
        ]:
            self._cascade_delete(child_type, child_id)

    def _parse(self, entity_type: EntityType, body: dict) -> dict:
        try:
            return entity_type.parse(body).to_payload()
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))

    def _register_collection(self, entity_type: EntityType) -> None:
        router = APIRouter(
            prefix=f"{self.prefix}{entity_type.path}",
            tags=[entity_type.value],
            dependencies=[Depends(self._check_auth)],
        )
        records = self.records[entity_type]

        @router.get("")
        def list_all():
            self.requests.append(("GET", entity_type.path))
            return [self._nested(entity_type, r) for r in records.values()]

        @router.get("/{entity_id}")
        def get_one(entity_id: str):
            self.requests.append(("GET", f"{entity_type.path}/{entity_id}"))
            return self._nested(entity_type, self._require(entity_type, entity_id))

        @router.post("", status_code=201)
        def create(body: dict = Body(...)):
            self.requests.append(("POST", entity_type.path))
            body.setdefault("id", str(uuid.uuid4()))
            if body["id"] in records:
                return self._nested(entity_type, records[body["id"]])
            record = self._parse(entity_type, body)
            records[record["id"]] = record
            return self._nested(entity_type, record)

        @router.put("/{entity_id}")
        def update(entity_id: str, body: dict = Body(...)):
            self.requests.append(("PUT", f"{entity_type.path}/{entity_id}"))
            current = self._require(entity_type, entity_id)
            record = self._parse(entity_type, {**current, **body, "id": entity_id})
            records[entity_id] = record
            return self._nested(entity_type, record)

        @router.delete("/{entity_id}", status_code=204)
        def delete(entity_id: str):
            self.requests.append(("DELETE", f"{entity_type.path}/{entity_id}"))
            self._require(entity_type, entity_id)
            self._cascade_delete(entity_type, entity_id)
            return Response(status_code=204)

        if entity_type in (EntityType.ROUTINES, EntityType.LOG_ROUTINES):

            @router.get("/user/{user_id}")
            def list_for_user(user_id: str):
                self.requests.append(("GET", f"{entity_type.path}/user/{user_id}"))
                return [
                    self._nested(entity_type, r)
                    for r in records.values()
                    if r.get("userId") == user_id
                ]

        self.app.include_router(router)

    def _setup_routes(self) -> None:
        @self.app.get(f"{self.prefix}/health")
        def health():
            return {"status": "ok"}

        for entity_type in EntityType:
            self._register_collection(entity_type)


def create_app(token: Optional[str] = None, prefix: str = "/api") -> FastAPI:
    return ReferenceAPI(token=token, prefix=prefix).app


