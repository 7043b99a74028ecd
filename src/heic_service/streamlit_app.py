import os
from urllib.parse import quote

import requests
import streamlit as st

from heic_service.session import EntryStatus, SessionView, build_archive

API_BASE = os.getenv("HEIC_SERVICE_API_BASE", os.getenv("API_BASE", "http://localhost:5000")).rstrip("/")


def _error_message(resp: requests.Response) -> str:
    try:
        return str(resp.json().get("message", resp.text))
    except ValueError:
        return f"{resp.status_code} {resp.text}"


def _view() -> SessionView:
    # Rebuilt from the server listing once per browser session
    if "view" not in st.session_state:
        view = SessionView()
        try:
            resp = requests.get(f"{API_BASE}/converted-files", timeout=30)
            if resp.status_code == 200:
                view.reconcile(resp.json().get("files", []))
        except requests.RequestException as e:
            st.session_state["error"] = f"Failed to connect to API: {e}"
        st.session_state["view"] = view
    return st.session_state["view"]


def _upload(view: SessionView, uploaded, fmt: str) -> None:
    entry_id = view.begin_upload(uploaded.name)
    files = {"heicFile": (uploaded.name, uploaded.getvalue(), uploaded.type or "image/heic")}
    try:
        resp = requests.post(f"{API_BASE}/upload", files=files, data={"format": fmt}, timeout=120)
    except requests.RequestException as e:
        view.record_failure(entry_id, f"Upload failed: {e}")
        return
    if resp.status_code == 200:
        view.record_success(entry_id, resp.json())
    else:
        view.record_failure(entry_id, _error_message(resp))


def _retry(view: SessionView, entry_id: str, fmt: str) -> None:
    name = view.retry_target(entry_id)
    try:
        resp = requests.post(f"{API_BASE}/convert/{quote(name, safe='')}", params={"format": fmt}, timeout=120)
    except requests.RequestException as e:
        view.record_failure(entry_id, f"Retry failed: {e}")
        return
    if resp.status_code == 200:
        view.record_success(entry_id, resp.json())
    else:
        view.record_failure(entry_id, _error_message(resp))


def _convert_all(fmt: str) -> None:
    try:
        resp = requests.get(f"{API_BASE}/convert-all", params={"format": fmt}, timeout=600)
    except requests.RequestException as e:
        st.session_state["error"] = f"Convert all failed: {e}"
        return
    if resp.status_code != 200:
        st.session_state["error"] = _error_message(resp)
        return
    result = resp.json()["result"]
    st.toast(f"Converted {result['succeeded']} file(s)", icon="✅")
    for item in result["failed"]:
        st.warning(f"{item['source']}: {item['reason']}")
    st.session_state.pop("view", None)


def _clear() -> None:
    try:
        resp = requests.delete(f"{API_BASE}/clear", timeout=60)
    except requests.RequestException as e:
        st.session_state["error"] = f"Clear failed: {e}"
        return
    if resp.status_code != 200:
        st.session_state["error"] = _error_message(resp)
    st.session_state.pop("view", None)
    st.session_state.pop("archive", None)


def _archive() -> bytes | None:
    try:
        resp = requests.get(f"{API_BASE}/converted-files", timeout=30)
        if resp.status_code != 200:
            st.session_state["error"] = _error_message(resp)
            return None
        items = []
        for f in resp.json().get("files", []):
            data = requests.get(f"{API_BASE}{f['downloadUrl']}", timeout=60)
            if data.status_code == 200:
                items.append((f["name"], data.content))
    except requests.RequestException as e:
        st.session_state["error"] = f"Download failed: {e}"
        return None
    return build_archive(items) if items else None


def main() -> None:
    st.set_page_config(page_title="HEIC Converter", page_icon="🖼️", layout="centered")
    st.title("🖼️ HEIC Converter")
    st.caption(f"API base: {API_BASE}")

    view = _view()
    fmt = st.radio("Output format", ["jpeg", "png"], horizontal=True)

    if "upload_key" not in st.session_state:
        st.session_state["upload_key"] = 0
    uploaded = st.file_uploader(
        "Upload HEIC images",
        type=["heic", "heif"],  # type: ignore[arg-type]
        accept_multiple_files=True,
        key=f"uploader-{st.session_state['upload_key']}",
    )
    if uploaded and st.button("Convert", type="primary"):
        with st.spinner("Uploading and converting..."):
            for f in uploaded:
                _upload(view, f, fmt)
        st.session_state["upload_key"] += 1
        st.rerun()

    col1, col2, col3 = st.columns(3)
    with col1:
        if st.button("Convert all uploads"):
            with st.spinner("Converting..."):
                _convert_all(fmt)
    with col2:
        if st.button("Refresh"):
            st.session_state.pop("view", None)
            st.rerun()
    with col3:
        if st.button("Clear all", type="secondary"):
            _clear()
            st.rerun()

    view = _view()
    stats = view.stats()
    st.caption(
        f"{stats[EntryStatus.CONVERTED]} converted · "
        f"{stats[EntryStatus.ERROR]} failed · "
        f"{stats[EntryStatus.UPLOADING]} in progress"
    )
    if stats[EntryStatus.CONVERTED] and st.button("Prepare download all"):
        st.session_state["archive"] = _archive()
    if archive := st.session_state.get("archive"):
        st.download_button("Download all", archive, file_name="converted.zip", mime="application/zip")

    for entry in view.entries():
        c1, c2 = st.columns([3, 1])
        with c1:
            if entry.status == EntryStatus.CONVERTED:
                st.markdown(f"✅ [{entry.converted_name}]({API_BASE}{entry.download_url})")
            elif entry.status == EntryStatus.ERROR:
                st.markdown(f"❌ {entry.name}: {entry.message}")
            else:
                st.markdown(f"⏳ {entry.name}")
        with c2:
            if entry.status == EntryStatus.ERROR and st.button("Retry", key=f"retry-{entry.id}"):
                _retry(view, entry.id, fmt)
                st.rerun()

    if err := st.session_state.pop("error", None):
        st.error(err)


if __name__ == "__main__":
    main()
