#!/usr/bin/env python3
"""Report how much disk space every path has used across a git repository's history.

Every object reachable from any revision is listed with ``git rev-list``,
the on-disk size of each blob is looked up with a single long-lived
``git cat-file --batch-check`` process, and the sizes are summed per path
(or per parent directory with ``--directories``).
"""
import argparse
import asyncio
import re
import sys
from collections import Counter

import aiofiles
import git
import humanize
from tqdm import tqdm

BATCH_CHECK_FORMAT = '%(objectname) %(objecttype) %(objectsize:disk)'
BLOB_TYPE = 'blob'
# Wide enough for "1023 Bytes" plus a separating space
SIZE_COLUMN_WIDTH = 12
OBJECT_ID_RE = re.compile(r'[0-9a-f]+')


class GitSizesError(Exception):
    """A fatal condition that aborts the run."""


def find_repository(repo_path):
    """Return the directory git should be run in for the repository containing repo_path."""
    try:
        repo = git.Repo(repo_path, search_parent_directories=True)
    except (git.InvalidGitRepositoryError, git.NoSuchPathError) as e:
        raise GitSizesError(f"not a git repository: {repo_path}") from e
    # Bare repositories have no working tree
    return repo.working_tree_dir or repo.git_dir


def parse_rev_list_output(text):
    """Parse ``rev-list --objects`` output into a mapping of object id -> path.

    Commits are listed as a bare id and carry no path, so they are skipped.
    If an id shows up more than once the last path wins; the same content
    stored under several paths is therefore only attributed to one of them.
    """
    associations = {}
    # Only newline ends a record; other line breaks are legal in file names
    for line in text.split('\n'):
        if not line:
            continue
        object_id, sep, path = line.partition(' ')
        if not OBJECT_ID_RE.fullmatch(object_id):
            raise GitSizesError(f"git rev-list: malformed output line: {line!r}")
        if not sep:
            continue
        associations[object_id] = path
    return associations


async def enumerate_associations(repo_path, paths=()):
    """List every object reachable from any revision, optionally restricted to paths."""
    cmd = ['git', '-C', repo_path, 'rev-list', '--all', '--objects']
    if paths:
        cmd += ['--', *paths]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise GitSizesError(f"git rev-list: failed to start: {e}") from e
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise GitSizesError(
            f"git rev-list exited with status {proc.returncode}: {stderr.decode(errors='replace').strip()}"
        )
    return parse_rev_list_output(stdout.decode('utf-8', 'surrogateescape'))


def parse_batch_check_line(line, name='git cat-file'):
    """Parse one ``<id> <type> <size>`` response; returns None for non-blob objects."""
    fields = line.split(' ')
    if len(fields) != 3:
        raise GitSizesError(f"{name}: malformed output line: {line!r}")
    object_id, object_type, size = fields
    if object_type != BLOB_TYPE:
        return None
    if not (size.isascii() and size.isdigit()):
        raise GitSizesError(f"{name}: invalid size {size!r} for object {object_id}")
    return object_id, int(size)


async def feed_object_ids(stdin, object_ids):
    """Write one object id per line, closing stdin after the last one."""
    try:
        for object_id in object_ids:
            stdin.write(f"{object_id}\n".encode())
            # Blocks while the child's input pipe is full
            await stdin.drain()
    finally:
        stdin.close()


async def run_batch_check(cmd, object_ids, name='git cat-file', progress=False):
    """Drive a batch-check style process and return object id -> size for blobs.

    Requests are written by a separate task while this coroutine reads the
    responses. Writing everything up front would deadlock as soon as the
    child's output pipe filled up.
    """
    object_ids = list(object_ids)
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise GitSizesError(f"{name}: failed to start: {e}") from e

    writer = asyncio.create_task(feed_object_ids(proc.stdin, object_ids))
    sizes = {}
    try:
        with tqdm(total=len(object_ids), desc="Resolving object sizes", unit="obj",
                  file=sys.stderr, disable=not progress) as pbar:
            async for raw in proc.stdout:
                pbar.update(1)
                parsed = parse_batch_check_line(raw.decode('utf-8', 'surrogateescape').rstrip('\n'), name)
                if parsed is not None:
                    object_id, size = parsed
                    sizes[object_id] = size
    except Exception:
        writer.cancel()
        await asyncio.gather(writer, return_exceptions=True)
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                # Already exited, not yet reaped
                pass
        await proc.wait()
        raise

    try:
        await writer
    except OSError as e:
        await proc.wait()
        raise GitSizesError(f"{name}: failed to write object ids: {e}") from e

    returncode = await proc.wait()
    if returncode != 0:
        raise GitSizesError(f"{name} exited with status {returncode}")
    return sizes


async def resolve_object_sizes(repo_path, object_ids, progress=False):
    """Return the on-disk size of every blob among object_ids."""
    if not object_ids:
        return {}
    cmd = ['git', '-C', repo_path, 'cat-file', f'--batch-check={BATCH_CHECK_FORMAT}']
    return await run_batch_check(cmd, object_ids, progress=progress)


def aggregate_sizes(associations, sizes, directories=False):
    """Sum blob sizes per path, or per parent directory when directories is set."""
    totals = {}
    for object_id, size in sizes.items():
        path = associations.get(object_id)
        if path is None:
            continue
        if directories:
            parent, sep, _ = path.rpartition('/')
            if not sep:
                print(f"Warning: File has no parent directory: {path}", file=sys.stderr)
                continue
            path = parent
        totals[path] = totals.get(path, 0) + size
    return totals


def format_size(size):
    return humanize.naturalsize(size, binary=True)


def format_report(sizes):
    """Render (path, size) pairs smallest first, one per line."""
    lines = []
    for path, size in sorted(sizes.items(), key=lambda item: item[1]):
        lines.append(f"{format_size(size):<{SIZE_COLUMN_WIDTH}}{path}\n")
    return ''.join(lines)


def print_path_counts(associations):
    """Print how many distinct objects were recorded under each path."""
    counts = Counter(associations.values())
    print(f"Objects per path ({len(counts)} paths):", file=sys.stderr)
    for path, count in sorted(counts.items()):
        print(f"{count:8} {path}", file=sys.stderr)


async def compute_path_sizes(repo_path, paths=(), directories=False, progress=False,
                             show_counts=False):
    """Run the whole pipeline and return the aggregated sizes."""
    associations = await enumerate_associations(repo_path, paths)
    if show_counts:
        print_path_counts(associations)
    sizes = await resolve_object_sizes(repo_path, associations.keys(), progress=progress)
    return aggregate_sizes(associations, sizes, directories)


async def write_report_async(output_filename, report):
    """Writes the report to a file asynchronously."""
    try:
        async with aiofiles.open(output_filename, 'w') as f:
            await f.write(report)
    except OSError as e:
        raise GitSizesError(f"failed to write report to {output_filename}: {e}") from e


async def main_async(args):
    """Main async function."""
    repo_path = find_repository(args.repo)
    totals = await compute_path_sizes(
        repo_path,
        args.paths,
        directories=args.directories,
        progress=args.progress,
        show_counts=args.show_counts,
    )
    report = format_report(totals)
    if args.output:
        await write_report_async(args.output, report)
    else:
        sys.stdout.write(report)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='Show the disk space used by every path across the whole git history')
    parser.add_argument('-d', '--directories', action='store_true',
                        help='Show the size of directories based on files committed in them')
    parser.add_argument('-C', '--repo', default='.',
                        help='Path to the repository (default: current directory)')
    parser.add_argument('-o', '--output',
                        help='Write the report to this file instead of stdout')
    parser.add_argument('--progress', action='store_true',
                        help='Show a progress bar while resolving object sizes')
    parser.add_argument('--show-counts', action='store_true',
                        help='Print the number of objects recorded per path to stderr')
    parser.add_argument('paths', nargs='*',
                        help='Optional: only show the size info about certain paths')
    return parser.parse_args(argv)


def main(argv=None):
    """Main function that runs the async event loop."""
    args = parse_args(argv)
    try:
        asyncio.run(main_async(args))
    except GitSizesError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
