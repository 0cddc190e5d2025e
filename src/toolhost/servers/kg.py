"""
Knowledge graph tools for MCP protocol.

Entities and typed relationships live in an in-memory networkx multigraph;
the graph, its statistics and single entities are readable as ``kg://``
resources.
"""

import json
import logging
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple
from urllib.parse import quote

import networkx as nx

from toolhost.config import Config, ConfigError
from toolhost.mcp.errors import ResourceNotFoundError
from toolhost.mcp.messages import ResourceContent, ResourceInfo
from toolhost.mcp.resources import ResourceURI
from toolhost.mcp.tools.models import Tool, ToolParameter
from toolhost.servers.base import ServerComponents

logger = logging.getLogger(__name__)

DEFAULT_QUERY_LIMIT = 50
DEFAULT_MAX_DEPTH = 5
DEFAULT_MAX_PATHS = 100
MATCH_ALL = "*"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class KnowledgeGraph:
    """
    Entities and relationships held in a directed multigraph.

    Nodes are keyed by entity id; edges are keyed by relationship type, so
    one pair of entities carries at most one relationship of each type.
    """

    def __init__(self, max_paths: int = DEFAULT_MAX_PATHS):
        self.graph = nx.MultiDiGraph()
        self.max_paths = max_paths

    def entity(self, entity_id: str) -> Dict[str, Any]:
        if entity_id not in self.graph:
            raise ResourceNotFoundError(f"No entity with id '{entity_id}'", entity_id=entity_id)
        return {"id": entity_id, **self.graph.nodes[entity_id]}

    def entities(self) -> List[Dict[str, Any]]:
        return [self.entity(entity_id) for entity_id in self.graph.nodes]

    def _relationship(self, source: str, target: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"from_entity": source, "to_entity": target, **data}

    def relationships(self) -> List[Dict[str, Any]]:
        return [self._relationship(u, v, data) for u, v, data in self.graph.edges(data=True)]

    def relationships_of(self, entity_id: str) -> List[Dict[str, Any]]:
        outgoing = self.graph.out_edges(entity_id, data=True)
        incoming = self.graph.in_edges(entity_id, data=True)
        return [self._relationship(u, v, data) for u, v, data in [*outgoing, *incoming]]

    def add_entity(
        self,
        id: str,
        label: str,
        entity_type: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Add an entity, or update the one with the same id.

        An update replaces the label, keeps the entity type unless a new one
        is given, and merges the properties over the existing ones.
        """
        now = _now()
        if id in self.graph:
            node = self.graph.nodes[id]
            node["label"] = label
            if entity_type is not None:
                node["entity_type"] = entity_type
            node["properties"] = {**node["properties"], **(properties or {})}
            node["updated_at"] = now
            logger.debug(f"Updated entity {id}")
            created = False
        else:
            self.graph.add_node(
                id,
                label=label,
                entity_type=entity_type,
                properties=dict(properties or {}),
                created_at=now,
                updated_at=now,
            )
            logger.info(f"Added entity {id} ({label})")
            created = True
        return {"entity": self.entity(id), "created": created}

    def add_relationship(
        self,
        from_entity: str,
        to_entity: str,
        relationship_type: str,
        properties: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Connect two existing entities.

        Adding a relationship that already exists merges its properties and
        keeps its id.

        Raises:
            ResourceNotFoundError: If either entity does not exist
        """
        for entity_id in (from_entity, to_entity):
            if entity_id not in self.graph:
                raise ResourceNotFoundError(f"No entity with id '{entity_id}'", entity_id=entity_id)

        if self.graph.has_edge(from_entity, to_entity, key=relationship_type):
            data = self.graph.edges[from_entity, to_entity, relationship_type]
            data["properties"] = {**data["properties"], **(properties or {})}
            created = False
        else:
            self.graph.add_edge(
                from_entity,
                to_entity,
                key=relationship_type,
                id=str(uuid.uuid4()),
                relationship_type=relationship_type,
                properties=dict(properties or {}),
                created_at=_now(),
            )
            created = True
        logger.info(f"{'Added' if created else 'Updated'} relationship {from_entity} -[{relationship_type}]-> {to_entity}")
        data = self.graph.edges[from_entity, to_entity, relationship_type]
        return {"relationship": self._relationship(from_entity, to_entity, data), "created": created}

    @staticmethod
    def _matches(text: Optional[str], needle: str) -> bool:
        return text is not None and needle in text.lower()

    @staticmethod
    def _passes(entity: Dict[str, Any], filters: Dict[str, Any]) -> bool:
        for key, expected in filters.items():
            actual = entity[key] if key in ("label", "entity_type") else entity["properties"].get(key)
            if actual != expected:
                return False
        return True

    def query_graph(
        self,
        pattern: str,
        limit: int = DEFAULT_QUERY_LIMIT,
        filters: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Find entities and relationships matching a pattern.

        An entity matches when the pattern occurs (case-insensitively) in its
        id, label or type; ``*`` matches everything. Filters then require
        exact values of ``label``, ``entity_type`` or entity properties.
        Relationships match by type, or when both ends are matching entities.
        """
        needle = pattern.lower()
        everything = pattern == MATCH_ALL
        entities = [
            entity
            for entity in self.entities()
            if (
                everything
                or self._matches(entity["id"], needle)
                or self._matches(entity["label"], needle)
                or self._matches(entity["entity_type"], needle)
            )
            and self._passes(entity, filters or {})
        ]
        matched_ids = {entity["id"] for entity in entities}
        relationships = [
            relationship
            for relationship in self.relationships()
            if (everything and not filters)
            or self._matches(relationship["relationship_type"], needle)
            or (relationship["from_entity"] in matched_ids and relationship["to_entity"] in matched_ids)
        ]
        logger.debug(f"Pattern {pattern!r} matched {len(entities)} entities and {len(relationships)} relationships")
        return {
            "entities": entities[:limit],
            "relationships": relationships[:limit],
            "total_count": len(entities) + len(relationships),
        }

    def _simple_paths(self, source: str, target: str, max_depth: int) -> Iterator[List[str]]:
        if source == target:
            yield [source]
            return
        seen: Set[Tuple[str, ...]] = set()
        # parallel edges yield the same node sequence once per edge
        for path in nx.all_simple_paths(self.graph, source, target, cutoff=max_depth):
            key = tuple(path)
            if key not in seen:
                seen.add(key)
                yield path

    def find_paths(self, from_entity: str, to_entity: str, max_depth: int = DEFAULT_MAX_DEPTH) -> Dict[str, Any]:
        """
        List the directed simple paths between two entities, shortest first.

        Raises:
            ResourceNotFoundError: If either entity does not exist
        """
        for entity_id in (from_entity, to_entity):
            if entity_id not in self.graph:
                raise ResourceNotFoundError(f"No entity with id '{entity_id}'", entity_id=entity_id)

        paths = []
        truncated = False
        for path in self._simple_paths(from_entity, to_entity, max_depth):
            if len(paths) >= self.max_paths:
                truncated = True
                break
            paths.append(path)
        paths.sort(key=len)
        return {"paths": paths, "path_count": len(paths), "truncated": truncated}

    def get_neighbors(
        self,
        entity_id: str,
        depth: int = 1,
        relationship_types: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Collect the entities within depth hops, following relationships in
        either direction.

        Raises:
            ResourceNotFoundError: If the entity does not exist
        """
        self.entity(entity_id)
        wanted = set(relationship_types) if relationship_types else None

        distances = {entity_id: 0}
        relationships: Dict[str, Dict[str, Any]] = {}
        frontier = [entity_id]
        for distance in range(1, depth + 1):
            next_frontier = []
            for node in frontier:
                edges = [*self.graph.out_edges(node, data=True), *self.graph.in_edges(node, data=True)]
                for u, v, data in edges:
                    if wanted is not None and data["relationship_type"] not in wanted:
                        continue
                    relationships.setdefault(data["id"], self._relationship(u, v, data))
                    other = v if u == node else u
                    if other not in distances:
                        distances[other] = distance
                        next_frontier.append(other)
            frontier = next_frontier

        neighbors = [
            {**self.entity(other), "distance": distance}
            for other, distance in distances.items()
            if other != entity_id
        ]
        return {
            "entity_id": entity_id,
            "entities": neighbors,
            "relationships": list(relationships.values()),
            "total_count": len(neighbors),
        }

    def stats(self) -> Dict[str, Any]:
        entity_types = Counter(
            data["entity_type"] for _, data in self.graph.nodes(data=True) if data["entity_type"] is not None
        )
        relationship_types = Counter(key for _, _, key in self.graph.edges(keys=True))
        return {
            "entity_count": self.graph.number_of_nodes(),
            "relationship_count": self.graph.number_of_edges(),
            "entity_types": dict(entity_types),
            "relationship_types": dict(relationship_types),
        }


class GraphResourceProvider:
    """Serves ``kg://graph``, ``kg://graph/stats`` and ``kg://entity/<id>``."""

    def __init__(self, graph: KnowledgeGraph):
        self.kg = graph

    def list_resources(self) -> List[ResourceInfo]:
        resources = [
            ResourceInfo(
                uri="kg://graph",
                name="Knowledge graph",
                description="Every entity and relationship in the knowledge graph",
                mime_type="application/json",
            ),
            ResourceInfo(
                uri="kg://graph/stats",
                name="Knowledge graph statistics",
                description="Entity and relationship counts by type",
                mime_type="application/json",
            ),
        ]
        for entity in self.kg.entities():
            resources.append(
                ResourceInfo(
                    uri=f"kg://entity/{quote(entity['id'], safe='')}",
                    name=f"Entity: {entity['label']}",
                    description="One entity with its relationships",
                    mime_type="application/json",
                )
            )
        return resources

    async def read(self, uri: ResourceURI) -> ResourceContent:
        section, _, rest = uri.path.partition("/")
        if section == "graph" and not rest:
            payload = {"entities": self.kg.entities(), "relationships": self.kg.relationships()}
        elif section == "graph" and rest == "stats":
            payload = self.kg.stats()
        elif section == "entity" and rest:
            payload = {"entity": self.kg.entity(rest), "relationships": self.kg.relationships_of(rest)}
        else:
            raise ResourceNotFoundError(f"Unknown knowledge graph resource {uri}", uri=str(uri))
        return ResourceContent(uri=str(uri), mime_type="application/json", text=json.dumps(payload, indent=2))


class KnowledgeGraphTools:
    """Factory for the knowledge graph tools."""

    @staticmethod
    def create(graph: KnowledgeGraph) -> List[Tool]:
        """
        Create the knowledge graph tools bound to one graph.

        Args:
            graph: The graph the handlers read and update

        Returns:
            The add_entity, add_relationship, query_graph, find_paths and
            get_neighbors tools
        """

        async def add_entity(**arguments):
            return graph.add_entity(**arguments)

        async def add_relationship(**arguments):
            return graph.add_relationship(**arguments)

        async def query_graph(**arguments):
            return graph.query_graph(**arguments)

        async def find_paths(**arguments):
            return graph.find_paths(**arguments)

        async def get_neighbors(**arguments):
            return graph.get_neighbors(**arguments)

        def entity_id(name: str, description: str) -> ToolParameter:
            return ToolParameter(name=name, description=description, type="string", required=True, min_length=1)

        def properties(description: str) -> ToolParameter:
            return ToolParameter(name="properties", description=description, type="object")

        return [
            Tool(
                name="add_entity",
                description="Add a new entity to the knowledge graph, or update an existing one",
                parameters=[
                    entity_id("id", "Unique identifier for the entity"),
                    ToolParameter(
                        name="label", description="Human-readable label for the entity", type="string", required=True
                    ),
                    ToolParameter(
                        name="entity_type",
                        description="Type/category of the entity (e.g., 'person', 'organization', 'concept')",
                        type="string",
                    ),
                    properties("Additional properties as key-value pairs"),
                ],
                handler=add_entity,
                strict=True,
            ),
            Tool(
                name="add_relationship",
                description="Add a relationship between two entities in the knowledge graph",
                parameters=[
                    entity_id("from_entity", "ID of the source entity"),
                    entity_id("to_entity", "ID of the target entity"),
                    ToolParameter(
                        name="relationship_type",
                        description="Type of relationship (e.g., 'knows', 'works_for', 'related_to')",
                        type="string",
                        required=True,
                        min_length=1,
                    ),
                    properties("Additional relationship properties"),
                ],
                handler=add_relationship,
                strict=True,
            ),
            Tool(
                name="query_graph",
                description="Query the knowledge graph with patterns and filters",
                parameters=[
                    ToolParameter(
                        name="pattern",
                        description="Text matched against entity ids, labels, types and relationship types; * matches all",
                        type="string",
                        required=True,
                        min_length=1,
                    ),
                    ToolParameter(
                        name="limit",
                        description="Maximum number of results to return",
                        type="integer",
                        default=DEFAULT_QUERY_LIMIT,
                        minimum=1,
                        maximum=1000,
                    ),
                    ToolParameter(
                        name="filters",
                        description="Exact values required of label, entity_type or entity properties",
                        type="object",
                    ),
                ],
                handler=query_graph,
                strict=True,
            ),
            Tool(
                name="find_paths",
                description="Find paths between two entities in the knowledge graph",
                parameters=[
                    entity_id("from_entity", "ID of the starting entity"),
                    entity_id("to_entity", "ID of the target entity"),
                    ToolParameter(
                        name="max_depth",
                        description="Maximum path depth to search",
                        type="integer",
                        default=DEFAULT_MAX_DEPTH,
                        minimum=1,
                        maximum=10,
                    ),
                ],
                handler=find_paths,
                strict=True,
            ),
            Tool(
                name="get_neighbors",
                description="Get neighboring entities connected to a specific entity",
                parameters=[
                    entity_id("entity_id", "ID of the entity to find neighbors for"),
                    ToolParameter(
                        name="depth",
                        description="Depth of neighbors to retrieve",
                        type="integer",
                        default=1,
                        minimum=1,
                        maximum=3,
                    ),
                    ToolParameter(
                        name="relationship_types",
                        description="Filter by specific relationship types",
                        type="array",
                        items={"type": "string"},
                    ),
                ],
                handler=get_neighbors,
                strict=True,
            ),
        ]


def create_server(config: Config) -> ServerComponents:
    """
    Build the knowledge graph server around an empty graph.

    Raises:
        ConfigError: If servers.kg.max_paths is not a positive integer
    """
    settings = config.get_server_settings("kg")
    max_paths = int(settings.get("max_paths", DEFAULT_MAX_PATHS))
    if max_paths < 1:
        raise ConfigError("servers.kg.max_paths must be at least 1")
    graph = KnowledgeGraph(max_paths=max_paths)
    return ServerComponents(
        name="kg",
        tools=KnowledgeGraphTools.create(graph),
        providers={"kg": GraphResourceProvider(graph)},
        instructions="The graph lives in memory for the life of the process; read it as kg://graph.",
    )
