"""
File system tools for MCP protocol.

Every path is resolved against a configured root directory; paths escaping
the root are refused.
"""

import logging
import mimetypes
import shutil
from pathlib import Path
from typing import Any, Dict, List

import anyio
from anyio import to_thread

from toolhost.config import Config
from toolhost.mcp.errors import InvalidParamsError, ResourceNotFoundError, UnauthorizedError
from toolhost.mcp.messages import ResourceContent, ResourceInfo
from toolhost.mcp.resources import ResourceURI
from toolhost.mcp.tools.models import Tool, ToolParameter
from toolhost.servers.base import ServerComponents

logger = logging.getLogger(__name__)

DEFAULT_MAX_READ_BYTES = 1_000_000
DEFAULT_MAX_SEARCH_RESULTS = 200


class FileSystem:
    """File operations confined to one root directory."""

    def __init__(
        self,
        root: Path,
        max_read_bytes: int = DEFAULT_MAX_READ_BYTES,
        max_search_results: int = DEFAULT_MAX_SEARCH_RESULTS,
    ):
        self.root = Path(root).expanduser().resolve()
        self.max_read_bytes = max_read_bytes
        self.max_search_results = max_search_results

    async def resolve(self, path: str) -> anyio.Path:
        """
        Resolve a client path inside the root.

        Args:
            path: Absolute or root-relative path

        Returns:
            The resolved path

        Raises:
            UnauthorizedError: If the path points outside the root
        """
        resolved = await anyio.Path(self._absolute(path)).resolve()
        if not Path(resolved).is_relative_to(self.root):
            raise UnauthorizedError(f"Path '{path}' is outside the served directory", path=path)
        return resolved

    def _absolute(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        return candidate if candidate.is_absolute() else self.root / candidate

    async def resolve_entry(self, path: str) -> anyio.Path:
        """
        Resolve a path inside the root without following its last component.

        The parent directory is resolved and checked against the root; the
        final name is kept as given, so a symlink names the link itself.

        Raises:
            UnauthorizedError: If the parent points outside the root
        """
        candidate = self._absolute(path)
        if candidate.name in ("", "..") or candidate == self.root:
            return await self.resolve(path)
        parent = await self.resolve(str(candidate.parent))
        return parent / candidate.name

    def relative(self, path: anyio.Path) -> str:
        return Path(path).relative_to(self.root).as_posix() or "."

    async def existing(self, path: str) -> anyio.Path:
        resolved = await self.resolve(path)
        if not await resolved.exists():
            raise ResourceNotFoundError(f"No such file or directory: {path}", path=path)
        return resolved

    async def read_file(self, path: str) -> Dict[str, Any]:
        """Read a text file."""
        target = await self.existing(path)
        if await target.is_dir():
            raise InvalidParamsError("path", f"'{path}' is a directory")
        size = (await target.stat()).st_size
        if size > self.max_read_bytes:
            raise InvalidParamsError("path", f"file is {size} bytes, the limit is {self.max_read_bytes}")
        content = await target.read_text(encoding="utf-8", errors="replace")
        logger.info(f"Read {size} bytes from {target}")
        return {"path": self.relative(target), "content": content, "size": size}

    async def write_file(self, path: str, content: str) -> Dict[str, Any]:
        """Create or overwrite a text file; parent directories must exist."""
        target = await self.resolve(path)
        if await target.is_dir():
            raise InvalidParamsError("path", f"'{path}' is a directory")
        if not await target.parent.is_dir():
            raise ResourceNotFoundError(f"Parent directory of '{path}' does not exist", path=path)
        await target.write_text(content, encoding="utf-8")
        written = len(content.encode("utf-8"))
        logger.info(f"Wrote {written} bytes to {target}")
        return {"path": self.relative(target), "bytes_written": written}

    async def list_directory(self, path: str = ".") -> Dict[str, Any]:
        """List the entries of a directory, directories first."""
        target = await self.existing(path)
        if not await target.is_dir():
            raise InvalidParamsError("path", f"'{path}' is not a directory")
        entries = []
        async for child in target.iterdir():
            is_dir = await child.is_dir()
            entries.append({"name": child.name, "type": "directory" if is_dir else "file"})
        entries.sort(key=lambda entry: (entry["type"] != "directory", entry["name"]))
        return {"path": self.relative(target), "entries": entries}

    async def create_directory(self, path: str) -> Dict[str, Any]:
        target = await self.resolve(path)
        await target.mkdir(parents=True, exist_ok=True)
        return {"path": self.relative(target), "created": True}

    async def _existing_entry(self, path: str) -> anyio.Path:
        entry = await self.resolve_entry(path)
        if not (await entry.is_symlink() or await entry.exists()):
            raise ResourceNotFoundError(f"No such file or directory: {path}", path=path)
        return entry

    async def delete_file(self, path: str) -> Dict[str, Any]:
        """Delete a file, or a directory together with everything below it; a symlink is removed, not followed."""
        target = await self._existing_entry(path)
        if Path(target) == self.root:
            raise UnauthorizedError("The served root itself cannot be deleted", path=path)
        if await target.is_symlink():
            await target.unlink()
        elif await target.is_dir():
            await to_thread.run_sync(shutil.rmtree, Path(target))
        else:
            await target.unlink()
        logger.info(f"Deleted {target}")
        return {"path": self.relative(target), "deleted": True}

    async def move_file(self, source: str, destination: str) -> Dict[str, Any]:
        """Move or rename a file or directory; a symlink is moved as a link. The destination must not exist."""
        origin = await self._existing_entry(source)
        if Path(origin) == self.root:
            raise UnauthorizedError("The served root itself cannot be moved", path=source)
        target = await self.resolve_entry(destination)
        if await target.is_symlink() or await target.exists():
            raise InvalidParamsError("destination", f"'{destination}' already exists")
        if not await target.parent.is_dir():
            raise ResourceNotFoundError(f"Parent directory of '{destination}' does not exist", path=destination)
        await origin.rename(Path(target))
        logger.info(f"Moved {origin} to {target}")
        return {"source": self.relative(origin), "destination": self.relative(target)}

    async def search_files(self, pattern: str, path: str = ".") -> Dict[str, Any]:
        """Find entries whose name contains pattern (case-insensitive), recursively."""
        base = await self.existing(path)
        needle = pattern.lower()
        matches: List[str] = []
        truncated = False
        async for candidate in base.rglob("*"):
            if needle in candidate.name.lower():
                if len(matches) >= self.max_search_results:
                    truncated = True
                    break
                matches.append(self.relative(candidate))
        return {"pattern": pattern, "matches": sorted(matches), "truncated": truncated}

    async def get_file_info(self, path: str) -> Dict[str, Any]:
        target = await self.existing(path)
        stat = await target.stat()
        if await target.is_dir():
            kind = "directory"
        elif await target.is_file():
            kind = "file"
        else:
            kind = "other"
        return {
            "path": self.relative(target),
            "type": kind,
            "size": stat.st_size,
            "modified": int(stat.st_mtime),
        }


class FileResourceProvider:
    """Serves ``file://`` URIs from the file system root."""

    def __init__(self, fs: FileSystem):
        self.fs = fs

    def list_resources(self) -> List[ResourceInfo]:
        return [
            ResourceInfo(
                uri=f"file://{self.fs.root.as_posix()}/",
                name="Served directory",
                description="Files under the served root; read them as file://<path>",
            )
        ]

    async def read(self, uri: ResourceURI) -> ResourceContent:
        target = await self.fs.existing(uri.path)
        if await target.is_dir():
            listing = await self.fs.list_directory(uri.path)
            text = "\n".join(entry["name"] + ("/" if entry["type"] == "directory" else "") for entry in listing["entries"])
            return ResourceContent(uri=str(uri), mime_type="text/plain", text=text)
        result = await self.fs.read_file(uri.path)
        mime_type, _ = mimetypes.guess_type(target.name)
        return ResourceContent(uri=str(uri), mime_type=mime_type or "text/plain", text=result["content"])


def _path_parameter(description: str) -> ToolParameter:
    return ToolParameter(name="path", description=description, type="string", required=True, min_length=1)


class FileSystemTools:
    """Factory for the file system tools."""

    @staticmethod
    def create(fs: FileSystem) -> List[Tool]:
        """
        Create the file system tools bound to one root.

        Args:
            fs: The confined file system

        Returns:
            The tool list, all with strict schemas
        """
        return [
            Tool(
                name="read_file",
                description="Read the complete contents of a text file",
                parameters=[_path_parameter("Path to the file to read")],
                handler=fs.read_file,
                strict=True,
            ),
            Tool(
                name="write_file",
                description="Create a new file or overwrite an existing file with the given content",
                parameters=[
                    _path_parameter("Path of the file to write"),
                    ToolParameter(name="content", description="Content to write", type="string", required=True),
                ],
                handler=fs.write_file,
                strict=True,
            ),
            Tool(
                name="list_directory",
                description="List files and directories in a directory",
                parameters=[
                    ToolParameter(
                        name="path", description="Directory to list", type="string", default=".", min_length=1
                    )
                ],
                handler=fs.list_directory,
                strict=True,
            ),
            Tool(
                name="create_directory",
                description="Create a directory, including missing parents",
                parameters=[_path_parameter("Directory to create")],
                handler=fs.create_directory,
                strict=True,
            ),
            Tool(
                name="delete_file",
                description="Delete a file, or a directory with all of its contents; this cannot be undone",
                parameters=[_path_parameter("Path of the file or directory to delete")],
                handler=fs.delete_file,
                strict=True,
            ),
            Tool(
                name="move_file",
                description="Move or rename a file or directory",
                parameters=[
                    ToolParameter(
                        name="source", description="Path to move", type="string", required=True, min_length=1
                    ),
                    ToolParameter(
                        name="destination", description="New path; must not exist yet", type="string", required=True, min_length=1
                    ),
                ],
                handler=fs.move_file,
                strict=True,
            ),
            Tool(
                name="search_files",
                description="Recursively find files and directories whose name contains a pattern",
                parameters=[
                    ToolParameter(
                        name="pattern", description="Case-insensitive name fragment", type="string", required=True, min_length=1
                    ),
                    ToolParameter(
                        name="path", description="Directory to search from", type="string", default=".", min_length=1
                    ),
                ],
                handler=fs.search_files,
                strict=True,
            ),
            Tool(
                name="get_file_info",
                description="Get size, type and modification time of a file or directory",
                parameters=[_path_parameter("Path to inspect")],
                handler=fs.get_file_info,
                strict=True,
            ),
        ]


def create_server(config: Config) -> ServerComponents:
    settings = config.get_server_settings("filesystem")
    fs = FileSystem(
        Path(settings.get("root", ".")),
        max_read_bytes=int(settings.get("max_read_bytes", DEFAULT_MAX_READ_BYTES)),
        max_search_results=int(settings.get("max_search_results", DEFAULT_MAX_SEARCH_RESULTS)),
    )
    logger.info(f"Serving files under {fs.root}")
    return ServerComponents(
        name="filesystem",
        tools=FileSystemTools.create(fs),
        providers={"file": FileResourceProvider(fs)},
        instructions=f"Paths are relative to {fs.root}.",
    )
