import os
import time

import requests
import streamlit as st

API_BASE = os.getenv("BATCH_CONVERT_API_BASE", os.getenv("API_BASE", "http://localhost:5000")).rstrip("/")
MAX_FILES = int(os.getenv("MAX_FILES", "20"))
FORMATS = ["pdf", "jpg", "png", "webp", "docx"]


def _reset_state():
    for key in ["archive", "archive_name", "summary", "error"]:
        if key in st.session_state:
            del st.session_state[key]
    # Bump the uploader key to clear any previously uploaded file widget state
    if "upload_key" in st.session_state:
        st.session_state["upload_key"] += 1
    else:
        st.session_state["upload_key"] = 1


def _limit_error(count: int) -> str | None:
    if count == 0:
        return "No files selected"
    if count > MAX_FILES:
        return f"Limit reached! Max {MAX_FILES} files allowed."
    return None


def _submit_batch(uploaded_files: list, target: str) -> tuple[bytes, str, dict[str, str]] | None:
    """POST the batch and return (zip bytes, download name, summary headers), or None on error."""
    files = [
        ("files", (f.name, f.getvalue(), f.type or "application/octet-stream"))
        for f in uploaded_files
    ]
    try:
        resp = requests.post(f"{API_BASE}/convert", files=files, data={"format": target}, timeout=900)
    except requests.RequestException as e:
        st.session_state["error"] = f"Conversion error: {e}"
        return None

    content_type = resp.headers.get("content-type", "").lower()
    if "application/json" in content_type:
        try:
            message = resp.json().get("message")
        except ValueError:
            message = None
        st.session_state["error"] = message or "Conversion failed"
        return None
    if resp.status_code != 200:
        st.session_state["error"] = "Conversion failed"
        return None

    name = f"converted-{int(time.time() * 1000)}.zip"
    disposition = resp.headers.get("content-disposition", "")
    if 'filename="' in disposition:
        name = disposition.split('filename="', 1)[1].split('"', 1)[0]
    summary = {k: v for k, v in resp.headers.items() if k.lower().startswith("x-")}
    return resp.content, name, summary


def main() -> None:
    st.set_page_config(page_title="File Converter", page_icon="🗂️", layout="centered")
    st.title("🗂️ File Converter")
    st.caption(f"API base: {API_BASE}")

    if st.button("Start Over", type="secondary"):
        _reset_state()
        st.rerun()

    if "upload_key" not in st.session_state:
        st.session_state["upload_key"] = 0
    uploaded = st.file_uploader(
        f"Drag & drop files (max {MAX_FILES})",
        accept_multiple_files=True,
        key=f"uploader-{st.session_state['upload_key']}",
    )

    target = st.selectbox("Convert To:", FORMATS, format_func=str.upper)

    if uploaded and (err := _limit_error(len(uploaded))):
        st.error(err)
    elif uploaded:
        st.write("Selected Files:")
        for f in uploaded:
            st.markdown(f"- {f.name}")
        if st.button(f"Convert All to {target.upper()}", type="primary"):
            st.session_state.pop("error", None)
            with st.spinner("Converting..."):
                res = _submit_batch(uploaded, target)
            if res:
                archive, name, summary = res
                st.session_state["archive"] = archive
                st.session_state["archive_name"] = name
                st.session_state["summary"] = summary

    if "archive" in st.session_state:
        summary = st.session_state.get("summary", {})
        failed = int(summary.get("X-Failed-Count", summary.get("x-failed-count", "0")) or 0)
        if failed:
            st.warning(f"{failed} file(s) could not be converted and were left out of the archive.")
        else:
            st.success("Convert Successful!")
        st.download_button(
            label="Download ZIP",
            data=st.session_state["archive"],
            file_name=st.session_state["archive_name"],
            mime="application/zip",
        )

    if err := st.session_state.get("error"):
        st.error(err)


if __name__ == "__main__":
    main()
