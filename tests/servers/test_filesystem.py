"""
Tests for the file system server.
"""

import json
import os

import pytest

from toolhost.config import Config
from toolhost.mcp.dispatcher import RequestDispatcher
from toolhost.mcp.errors import InvalidParamsError, ResourceNotFoundError, UnauthorizedError
from toolhost.mcp.resources import ResourceLocator, ResourceURI
from toolhost.mcp.tools.registry import ToolRegistry
from toolhost.servers.filesystem import FileResourceProvider, FileSystem, create_server


@pytest.fixture
def root(tmp_path):
    served = tmp_path / "served"
    served.mkdir()
    (served / "notes.txt").write_text("hello")
    (served / "sub").mkdir()
    (served / "sub" / "Deep.TXT").write_text("deep down")
    (tmp_path / "secret.txt").write_text("keep out")
    return served


@pytest.fixture
def fs(root):
    return FileSystem(root)


@pytest.mark.asyncio
async def test_read_file(fs):
    result = await fs.read_file("notes.txt")

    assert result == {"path": "notes.txt", "content": "hello", "size": 5}


@pytest.mark.asyncio
async def test_read_file_by_absolute_path(fs, root):
    result = await fs.read_file(str(root / "sub" / "Deep.TXT"))

    assert result["path"] == "sub/Deep.TXT"
    assert result["content"] == "deep down"


@pytest.mark.asyncio
async def test_paths_outside_root_are_refused(fs, root):
    with pytest.raises(UnauthorizedError):
        await fs.read_file("../secret.txt")
    with pytest.raises(UnauthorizedError):
        await fs.read_file(str(root.parent / "secret.txt"))


@pytest.mark.asyncio
async def test_symlink_escaping_root_is_refused(fs, root):
    os.symlink(root.parent / "secret.txt", root / "link.txt")

    with pytest.raises(UnauthorizedError):
        await fs.read_file("link.txt")


@pytest.mark.asyncio
async def test_read_missing_file(fs):
    with pytest.raises(ResourceNotFoundError):
        await fs.read_file("nope.txt")


@pytest.mark.asyncio
async def test_read_directory_is_invalid(fs):
    with pytest.raises(InvalidParamsError) as exc_info:
        await fs.read_file("sub")

    assert exc_info.value.field == "path"


@pytest.mark.asyncio
async def test_read_size_limit(root):
    fs = FileSystem(root, max_read_bytes=3)

    with pytest.raises(InvalidParamsError, match="limit"):
        await fs.read_file("notes.txt")


@pytest.mark.asyncio
async def test_write_then_read(fs, root):
    result = await fs.write_file("sub/new.txt", "héllo")

    assert result == {"path": "sub/new.txt", "bytes_written": 6}
    assert (root / "sub" / "new.txt").read_text(encoding="utf-8") == "héllo"


@pytest.mark.asyncio
async def test_write_needs_existing_parent(fs):
    with pytest.raises(ResourceNotFoundError):
        await fs.write_file("missing/new.txt", "x")


@pytest.mark.asyncio
async def test_write_outside_root_is_refused(fs, root):
    with pytest.raises(UnauthorizedError):
        await fs.write_file("../escape.txt", "x")

    assert not (root.parent / "escape.txt").exists()


@pytest.mark.asyncio
async def test_list_directory_puts_directories_first(fs):
    result = await fs.list_directory()

    assert result == {
        "path": ".",
        "entries": [{"name": "sub", "type": "directory"}, {"name": "notes.txt", "type": "file"}],
    }


@pytest.mark.asyncio
async def test_list_file_is_invalid(fs):
    with pytest.raises(InvalidParamsError):
        await fs.list_directory("notes.txt")


@pytest.mark.asyncio
async def test_create_directory(fs, root):
    result = await fs.create_directory("a/b")

    assert result == {"path": "a/b", "created": True}
    assert (root / "a" / "b").is_dir()


@pytest.mark.asyncio
async def test_delete_file_and_directory(fs, root):
    assert await fs.delete_file("notes.txt") == {"path": "notes.txt", "deleted": True}
    await fs.delete_file("sub")

    assert not (root / "notes.txt").exists()
    assert not (root / "sub").exists()


@pytest.mark.asyncio
async def test_delete_refuses_root_and_outside(fs):
    with pytest.raises(UnauthorizedError):
        await fs.delete_file(".")
    with pytest.raises(UnauthorizedError):
        await fs.delete_file("../secret.txt")
    with pytest.raises(ResourceNotFoundError):
        await fs.delete_file("nope.txt")


@pytest.mark.asyncio
async def test_move_file(fs, root):
    result = await fs.move_file("notes.txt", "sub/renamed.txt")

    assert result == {"source": "notes.txt", "destination": "sub/renamed.txt"}
    assert (root / "sub" / "renamed.txt").read_text() == "hello"
    assert not (root / "notes.txt").exists()


@pytest.mark.asyncio
async def test_move_file_errors(fs, root):
    with pytest.raises(InvalidParamsError) as exc_info:
        await fs.move_file("notes.txt", "sub/Deep.TXT")
    assert exc_info.value.field == "destination"

    with pytest.raises(UnauthorizedError):
        await fs.move_file("notes.txt", "../stolen.txt")
    with pytest.raises(ResourceNotFoundError):
        await fs.move_file("notes.txt", "missing/notes.txt")
    assert (root / "notes.txt").exists()


@pytest.mark.asyncio
async def test_delete_symlink_removes_the_link_only(fs, root):
    (root / "data").mkdir()
    (root / "data" / "keep.txt").write_text("precious")
    os.symlink(root / "data", root / "shortcut")

    result = await fs.delete_file("shortcut")

    assert result == {"path": "shortcut", "deleted": True}
    assert not os.path.lexists(root / "shortcut")
    assert (root / "data" / "keep.txt").read_text() == "precious"


@pytest.mark.asyncio
async def test_delete_dangling_symlink(fs, root):
    os.symlink(root / "gone", root / "dangling")

    await fs.delete_file("dangling")

    assert not os.path.lexists(root / "dangling")


@pytest.mark.asyncio
async def test_move_symlink_moves_the_link(fs, root):
    os.symlink(root / "notes.txt", root / "alias.txt")

    result = await fs.move_file("alias.txt", "sub/alias.txt")

    assert result == {"source": "alias.txt", "destination": "sub/alias.txt"}
    assert os.path.islink(root / "sub" / "alias.txt")
    assert not os.path.lexists(root / "alias.txt")
    assert (root / "notes.txt").read_text() == "hello"


@pytest.mark.asyncio
async def test_delete_symlink_inside_escaping_directory_is_refused(fs, root):
    os.symlink(root.parent, root / "outside")

    with pytest.raises(UnauthorizedError):
        await fs.delete_file("outside/secret.txt")

    assert (root.parent / "secret.txt").exists()


@pytest.mark.asyncio
async def test_search_files_is_case_insensitive(fs):
    result = await fs.search_files("deep")

    assert result == {"pattern": "deep", "matches": ["sub/Deep.TXT"], "truncated": False}


@pytest.mark.asyncio
async def test_search_files_truncates(root):
    fs = FileSystem(root, max_search_results=1)

    result = await fs.search_files("t")

    assert len(result["matches"]) == 1
    assert result["truncated"]


@pytest.mark.asyncio
async def test_search_files_exactly_at_limit_is_not_truncated(root):
    fs = FileSystem(root, max_search_results=2)

    result = await fs.search_files("t")

    assert result["matches"] == ["notes.txt", "sub/Deep.TXT"]
    assert not result["truncated"]


@pytest.mark.asyncio
async def test_get_file_info(fs):
    file_info = await fs.get_file_info("notes.txt")
    dir_info = await fs.get_file_info("sub")

    assert file_info["type"] == "file"
    assert file_info["size"] == 5
    assert isinstance(file_info["modified"], int)
    assert dir_info["type"] == "directory"


@pytest.mark.asyncio
async def test_resource_provider_reads_files_and_directories(fs, root):
    provider = FileResourceProvider(fs)

    file_content = await provider.read(ResourceURI.parse(f"file://{root.as_posix()}/notes.txt"))
    dir_content = await provider.read(ResourceURI.parse(f"file://{root.as_posix()}/"))

    assert file_content.text == "hello"
    assert file_content.mime_type == "text/plain"
    assert dir_content.text == "sub/\nnotes.txt"
    assert provider.list_resources()[0].uri == f"file://{root.as_posix()}/"


@pytest.mark.asyncio
async def test_resource_provider_refuses_outside_root(fs, root):
    with pytest.raises(UnauthorizedError):
        await FileResourceProvider(fs).read(ResourceURI.parse(f"file://{root.parent.as_posix()}/secret.txt"))


def _config(tmp_path, root):
    config_file = tmp_path / "config.yaml"
    config_file.write_text(f"servers:\n  filesystem:\n    root: {root}\n    max_search_results: 10\n")
    return Config(config_file, environ={})


def test_create_server(tmp_path, root):
    components = create_server(_config(tmp_path, root))

    assert components.name == "filesystem"
    assert [tool.name for tool in components.tools] == [
        "read_file",
        "write_file",
        "list_directory",
        "create_directory",
        "delete_file",
        "move_file",
        "search_files",
        "get_file_info",
    ]
    assert all(tool.strict for tool in components.tools)
    assert set(components.providers) == {"file"}
    assert components.providers["file"].fs.max_search_results == 10


@pytest.mark.asyncio
async def test_tool_calls_through_dispatcher(tmp_path, root):
    components = create_server(_config(tmp_path, root))
    registry = ToolRegistry()
    registry.register_all(components.tools)
    resources = ResourceLocator()
    resources.register("file", components.providers["file"])
    dispatcher = RequestDispatcher(registry, resources=resources)

    def call(request_id, name, arguments):
        return json.dumps(
            {
                "jsonrpc": "2.0",
                "id": request_id,
                "method": "tools/call",
                "params": {"name": name, "arguments": arguments},
            }
        )

    read = await dispatcher.handle(call(1, "read_file", {"path": "notes.txt"}))
    escaped = await dispatcher.handle(call(2, "read_file", {"path": "../secret.txt"}))
    extra = await dispatcher.handle(call(3, "read_file", {"path": "notes.txt", "mode": "rb"}))

    assert read.result["structuredContent"]["content"] == "hello"
    assert escaped.error.code == -32001
    assert extra.error.code == -32602
    assert extra.error.data["field"] == "mode"
