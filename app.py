"""
AI Dev Sandbox - Streamlit Dashboard

Create project sandboxes, edit their files, run commands and watch the
live preview. Every action goes through the async SandboxAPI, which runs
on one long-lived event loop in a background thread so background project
initialization survives between Streamlit reruns.
"""

import asyncio
import concurrent.futures
import threading
import time

import streamlit as st
import streamlit.components.v1 as components

from aidev.api import SandboxAPI
from aidev.config import ConfigError, get_config, setup_logging
from aidev.errors import EngineUnavailable
from aidev.utils import guess_language_from_filename


# Page configuration
st.set_page_config(
    page_title="AI Dev Sandbox",
    page_icon="🧪",
    layout="wide",
)

# Custom CSS for better styling
st.markdown("""
<style>
    .main-header {
        font-size: 2.5rem;
        font-weight: 700;
        color: #1E88E5;
        margin-bottom: 0.5rem;
    }
    .sub-header {
        font-size: 1.1rem;
        color: #666;
        margin-bottom: 2rem;
    }
    .state-running { color: #28a745; font-weight: 600; }
    .state-stopped { color: #6c757d; font-weight: 600; }
</style>
""", unsafe_allow_html=True)


# =============================================================================
# ENGINE ACCESS
# =============================================================================

@st.cache_resource
def get_loop() -> asyncio.AbstractEventLoop:
    """One event loop for the whole app, running in a daemon thread."""
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    return loop


@st.cache_resource
def get_api() -> SandboxAPI:
    """Build the sandbox API once per server process."""
    config = get_config()
    setup_logging(config.log_level)
    return SandboxAPI.from_config(config)


def call(coro, timeout: float = 120):
    """Run an API coroutine on the engine loop and wait for its result."""
    future = asyncio.run_coroutine_threadsafe(coro, get_loop())
    return future.result(timeout=timeout)


def init_session_state():
    """Initialize session state variables."""
    if "selected_sandbox" not in st.session_state:
        st.session_state.selected_sandbox = None
    if "selected_file" not in st.session_state:
        st.session_state.selected_file = None
    if "command_output" not in st.session_state:
        st.session_state.command_output = ""


def show_result(result: dict, success_message: str = None) -> bool:
    """Render an API response; returns True on success."""
    if result.get("success"):
        if success_message:
            st.success(success_message)
        return True
    st.error(f"{result.get('error_type', 'Error')}: {result.get('error', 'Unknown error')}")
    return False


def connect_engine():
    """Return the API or render why it is unavailable."""
    try:
        return get_api()
    except ConfigError as e:
        st.error(f"Configuration Error\n\n{str(e)}")
        return None
    except EngineUnavailable as e:
        st.error(f"Docker is not running. Please start Docker and reload.\n\n{e}")
        return None


# =============================================================================
# SANDBOX LIST
# =============================================================================

def display_create_form(api: SandboxAPI):
    """Sidebar form creating a new project sandbox."""
    st.header("New Project")
    with st.form("create_project", clear_on_submit=True):
        name = st.text_input("Project name", placeholder="calculator")
        wait = st.checkbox("Wait for dependencies to install")
        submitted = st.form_submit_button("Create", use_container_width=True)

    if submitted and name.strip():
        with st.spinner("Creating sandbox (the base image may need to be pulled)..."):
            result = call(api.create_project(name.strip(), wait=wait), timeout=900)
        if not show_result(result):
            return
        st.session_state.selected_sandbox = result["id"]
        if "initialized" not in result:
            st.success(f"Sandbox created on port {result['port']}. Installing dependencies...")
        elif result["initialized"]:
            st.success(f"Sandbox ready on port {result['port']}")
        else:
            st.warning("Sandbox created, but the project could not be built. Check the logs tab.")


def display_sandbox_list(api: SandboxAPI):
    """List sandboxes with lifecycle controls."""
    result = call(api.list_sandboxes())
    if not show_result(result):
        return

    sandboxes = result.get("sandboxes", [])
    if not sandboxes:
        st.info("No sandboxes yet. Create a project from the sidebar.")
        return

    for sandbox in sandboxes:
        sandbox_id = sandbox["id"]
        col1, col2, col3, col4, col5 = st.columns([3, 1, 1, 1, 1])
        with col1:
            st.markdown(
                f"**{sandbox['project_name']}** &nbsp; "
                f"<span class='state-{sandbox['state']}'>{sandbox['state']}</span><br>"
                f"<small>{sandbox['name']} · port {sandbox['port']} · {sandbox.get('created_at') or ''}</small>",
                unsafe_allow_html=True,
            )
        with col2:
            if st.button("Open", key=f"open_{sandbox_id}", use_container_width=True):
                st.session_state.selected_sandbox = sandbox_id
                st.session_state.selected_file = None
        with col3:
            if sandbox["state"] == "running":
                if st.button("Stop", key=f"stop_{sandbox_id}", use_container_width=True):
                    show_result(call(api.stop_sandbox(sandbox_id)))
                    st.rerun()
            elif st.button("Start", key=f"start_{sandbox_id}", use_container_width=True):
                show_result(call(api.start_sandbox(sandbox_id)))
                st.rerun()
        with col4:
            st.link_button("Preview", f"http://localhost:{sandbox['port']}", use_container_width=True)
        with col5:
            if st.button("Remove", key=f"remove_{sandbox_id}", type="primary", use_container_width=True):
                with st.spinner("Removing sandbox..."):
                    removed = call(api.remove_sandbox(sandbox_id))
                if show_result(removed) and st.session_state.selected_sandbox == sandbox_id:
                    st.session_state.selected_sandbox = None
                st.rerun()


# =============================================================================
# PROJECT VIEW
# =============================================================================

def display_files(api: SandboxAPI, sandbox_id: str):
    """File browser and editor over the workspace mirror."""
    result = call(api.list_files(sandbox_id))
    if not show_result(result):
        return

    files = result.get("files", [])
    if not files:
        st.info("Workspace is empty. The project template may still be initializing.")
        return

    col1, col2 = st.columns([1, 3])
    with col1:
        selected = st.radio("Files", options=files, key=f"files_{sandbox_id}")
        st.session_state.selected_file = selected

    with col2:
        path = st.session_state.selected_file
        content_result = call(api.read_file(sandbox_id, path))
        if not content_result.get("success"):
            st.caption(f"{path} is a directory")
        else:
            content = content_result.get("content", "")
            st.caption(f"{path} · {guess_language_from_filename(path)}")
            edited = st.text_area("Content", value=content, height=420, key=f"edit_{sandbox_id}_{path}")
            if st.button("Save and sync", key=f"save_{sandbox_id}_{path}"):
                with st.spinner("Writing file and syncing..."):
                    show_result(call(api.write_file(sandbox_id, path, edited)), f"{path} saved")
        if st.button("Delete", key=f"delete_{sandbox_id}_{path}"):
            if show_result(call(api.delete_file(sandbox_id, path))):
                st.session_state.selected_file = None
                st.rerun()

    with st.expander("New file"):
        new_path = st.text_input("Path", placeholder="src/components/Button.tsx", key=f"new_path_{sandbox_id}")
        new_content = st.text_area("Content", key=f"new_content_{sandbox_id}")
        if st.button("Create file", key=f"create_file_{sandbox_id}") and new_path:
            show_result(call(api.write_file(sandbox_id, new_path, new_content)), f"{new_path} created")

    with st.expander("Import from sandbox"):
        remote_path = st.text_input("Path in sandbox", placeholder="package-lock.json", key=f"import_path_{sandbox_id}")
        if st.button("Import", key=f"import_{sandbox_id}") and remote_path:
            result = call(api.fetch_file(sandbox_id, remote_path))
            if show_result(result, f"Imported {len(result.get('files', []))} file(s)"):
                st.rerun()


def display_terminal(api: SandboxAPI, sandbox_id: str):
    """Run ad-hoc commands inside the sandbox."""
    command = st.text_input("Command", placeholder="ls -la", key=f"cmd_{sandbox_id}")
    if st.button("Run", key=f"run_{sandbox_id}") and command:
        with st.spinner(f"Running `{command}`..."):
            result = call(api.run_command(sandbox_id, command))
        if show_result(result):
            st.session_state.command_output = result.get("output", "")

    if st.session_state.command_output:
        st.code(st.session_state.command_output, language="bash")


async def next_update(stream):
    return await stream.__anext__()


def follow_logs(api: SandboxAPI, sandbox_id: str, tail: int):
    """Redraw the log tail on every change until the script is rerun."""
    status = st.empty()
    output = st.empty()
    stream = api.follow_logs(sandbox_id, tail)
    pending = None
    try:
        while True:
            pending = asyncio.run_coroutine_threadsafe(next_update(stream), get_loop())
            while True:
                try:
                    update = pending.result(timeout=1)
                    break
                except concurrent.futures.TimeoutError:
                    # Touching the page lets Streamlit interrupt us on rerun
                    status.caption(f"Following logs · {time.strftime('%H:%M:%S')}")
            pending = None
            if not show_result(update):
                break
            output.code(update.get("text") or "(no output yet)", language=None)
    except StopAsyncIteration:
        pass
    finally:
        if pending is not None:
            # Cancelling the pending step also closes the generator
            pending.cancel()
        else:
            call(stream.aclose(), timeout=5)


def display_logs(api: SandboxAPI, sandbox_id: str):
    """Tail of the container's combined output."""
    tail = st.slider("Lines", min_value=10, max_value=500, value=50, step=10, key=f"tail_{sandbox_id}")
    if st.toggle("Follow", key=f"follow_logs_{sandbox_id}"):
        follow_logs(api, sandbox_id, tail)
        return

    st.button("Refresh logs", key=f"refresh_logs_{sandbox_id}")
    result = call(api.get_logs(sandbox_id, tail))
    if show_result(result):
        st.code(result.get("text") or "(no output yet)", language=None)


def display_project(api: SandboxAPI, sandbox_id: str):
    """Tabs for the selected sandbox."""
    port_result = call(api.get_port(sandbox_id))
    port = port_result.get("port")

    col1, col2 = st.columns([3, 1])
    with col1:
        st.subheader(f"Sandbox {sandbox_id[:12]}")
        st.code(f"http://localhost:{port}", language=None)
    with col2:
        if st.button("Rebuild", use_container_width=True, key=f"rebuild_{sandbox_id}"):
            with st.spinner("Syncing, installing dependencies and restarting the dev server..."):
                show_result(call(api.rebuild(sandbox_id, port), timeout=300), "Rebuild finished")

    files_tab, terminal_tab, logs_tab, preview_tab = st.tabs(["Files", "Terminal", "Logs", "Preview"])

    with files_tab:
        display_files(api, sandbox_id)

    with terminal_tab:
        display_terminal(api, sandbox_id)

    with logs_tab:
        display_logs(api, sandbox_id)

    with preview_tab:
        components.iframe(f"http://localhost:{port}", height=600, scrolling=True)


# =============================================================================
# MAIN APPLICATION
# =============================================================================

def main():
    """Main application entry point."""
    init_session_state()

    # Header
    st.markdown('<p class="main-header">AI Dev Sandbox</p>', unsafe_allow_html=True)
    st.markdown(
        '<p class="sub-header">Isolated Docker sandboxes with live preview for generated projects</p>',
        unsafe_allow_html=True
    )

    api = connect_engine()
    if api is None:
        return

    with st.sidebar:
        display_create_form(api)
        st.divider()
        if st.button("Refresh", use_container_width=True):
            st.rerun()

    st.header("Projects")
    display_sandbox_list(api)

    if st.session_state.selected_sandbox:
        st.divider()
        display_project(api, st.session_state.selected_sandbox)


if __name__ == "__main__":
    main()
