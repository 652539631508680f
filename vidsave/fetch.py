import asyncio
import dataclasses
import logging
import shutil
import tempfile
import threading
from pathlib import Path

import yt_dlp

from vidsave.errors import FetchFailed, FetchFailedKind
from vidsave.links import CHROME_USER_AGENT

logger = logging.getLogger(__name__)

TEMP_DIR_PREFIX = "vidsave-"


@dataclasses.dataclass(frozen=True)
class FetchedMedia:
    path: Path

    @property
    def workdir(self) -> Path:
        return self.path.parent


def cleanup(path: Path | None) -> None:
    """Remove a downloaded file together with its temporary directory."""
    if path is None:
        return
    workdir = path if path.is_dir() else path.parent
    try:
        shutil.rmtree(workdir)
    except FileNotFoundError:
        return
    except OSError as err:
        logger.warning("Failed to cleanup temp dir %s: %s", workdir, err)


def _find_output_file(temp_dir: Path, result_info: dict | None) -> Path | None:
    result_info = result_info or {}
    for download_info in result_info.get("requested_downloads") or []:
        filepath = download_info.get("filepath")
        if filepath and Path(filepath).is_file():
            return Path(filepath)
    filename = result_info.get("_filename")
    if filename and Path(filename).is_file():
        return Path(filename)
    files = sorted((p for p in temp_dir.iterdir() if p.is_file()), key=lambda p: p.stat().st_mtime, reverse=True)
    return files[0] if files else None


class YtDlpFetcher:
    """Downloads a single video with yt-dlp into a private temp directory."""

    def __init__(
        self,
        cookies_dir: Path | None = None,
        insecure_skip_verify: bool = False,
        temp_root: Path | None = None,
    ) -> None:
        self._cookies_dir = cookies_dir
        self._insecure_skip_verify = insecure_skip_verify
        self._temp_root = temp_root

    def _ydl_opts(self, temp_dir: Path, proxy: str, platform: str | None, cancelled: threading.Event) -> dict:
        def _abort_if_cancelled(_progress: dict) -> None:
            if cancelled.is_set():
                raise yt_dlp.utils.DownloadCancelled("request cancelled")

        ydl_opts = {
            "noplaylist": True,
            "format": "best[ext=mp4]/best",
            "outtmpl": str(temp_dir / "video.%(ext)s"),
            "retries": 2,
            "fragment_retries": 2,
            "http_headers": {"User-Agent": CHROME_USER_AGENT},
            "progress_hooks": [_abort_if_cancelled],
            "quiet": True,
            "no_warnings": True,
        }
        if proxy:
            ydl_opts["proxy"] = proxy
        if self._insecure_skip_verify:
            ydl_opts["nocheckcertificate"] = True
        if platform and self._cookies_dir is not None:
            cookiefile = self._cookies_dir / f"{platform}.txt"
            if cookiefile.exists():
                ydl_opts["cookiefile"] = str(cookiefile)
        return ydl_opts

    @staticmethod
    def _run(url: str, ydl_opts: dict, temp_dir: Path) -> Path:
        try:
            with yt_dlp.YoutubeDL(ydl_opts) as ydl:
                result_info = ydl.extract_info(url, download=True)
        except yt_dlp.utils.DownloadCancelled:
            raise
        except Exception as err:
            raise FetchFailed(FetchFailedKind.TOOL_EXECUTION_FAILED, str(err)) from err

        if isinstance(result_info, dict) and result_info.get("entries"):
            result_info = next((entry for entry in result_info["entries"] if entry), None)
        file_path = _find_output_file(temp_dir, result_info if isinstance(result_info, dict) else None)
        if file_path is None:
            names = sorted(p.name for p in temp_dir.iterdir())
            raise FetchFailed(FetchFailedKind.NO_OUTPUT_PRODUCED, f"no files in {temp_dir}: {names}")
        return file_path

    async def fetch(self, url: str, proxy: str = "", platform: str | None = None) -> FetchedMedia:
        temp_dir = Path(tempfile.mkdtemp(prefix=TEMP_DIR_PREFIX, dir=self._temp_root))
        cancelled = threading.Event()
        ydl_opts = self._ydl_opts(temp_dir, proxy, platform, cancelled)
        logger.debug("Running yt-dlp: url=%s proxy=%s temp_dir=%s", url, bool(proxy), temp_dir)

        task = asyncio.ensure_future(asyncio.to_thread(self._run, url, ydl_opts, temp_dir))
        try:
            file_path = await asyncio.shield(task)
        except asyncio.CancelledError:
            cancelled.set()
            # The worker thread cannot be interrupted; wait for it to notice before removing its files.
            try:
                await task
            except (Exception, asyncio.CancelledError) as err:
                logger.debug("yt-dlp stopped after cancellation: %s", err)
            await asyncio.to_thread(cleanup, temp_dir)
            raise
        except FetchFailed as err:
            logger.error("yt-dlp failed: url=%s kind=%s detail=%s", url, err.kind.value, err.detail)
            await asyncio.to_thread(cleanup, temp_dir)
            raise
        except Exception as err:
            logger.error("yt-dlp failed: url=%s err=%s", url, err)
            await asyncio.to_thread(cleanup, temp_dir)
            raise FetchFailed(FetchFailedKind.TOOL_EXECUTION_FAILED, str(err)) from err

        logger.info("Video downloaded: path=%s", file_path)
        return FetchedMedia(path=file_path)
