from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import gpxpy.gpx
import requests
from flask import Flask, Response, jsonify, request

from trakke.backend.config import Settings
from trakke.backend.elevation import ElevationService
from trakke.backend.errors import (
    AreaTooLarge,
    DownloadCancelled,
    ElevationUnavailable,
    EntityNotFound,
    InvalidArea,
    InvalidEntity,
    StoreError,
)
from trakke.backend.models import DownloadArea, DownloadProgress
from trakke.backend.offline_maps import OfflineMapService
from trakke.backend.repositories import ProjectRepository, RouteRepository, WaypointRepository
from trakke.backend.route_sampling import (
    calculate_distance,
    cumulative_distances,
    gpx_coordinates,
    gpx_title,
    read_gpx,
    route_to_gpx,
)
from trakke.backend.store import StoreManager

log = logging.getLogger('trakke.api')

# In-memory download jobs for SSE progress
JOBS: Dict[str, Dict[str, Any]] = {}
JOBS_LOCK = threading.Lock()
CANCEL_EVENTS: Dict[str, threading.Event] = {}

SSE_HEADERS = {
    'Cache-Control': 'no-cache',
    'Content-Type': 'text/event-stream',
    'Connection': 'keep-alive'
}


def job_init(job_id: str, total: int) -> threading.Event:
    ev = threading.Event()
    with JOBS_LOCK:
        JOBS[job_id] = {"status": "running", "done": False, "progress": DownloadProgress(total_tiles=int(total)).to_dict()}
        CANCEL_EVENTS[job_id] = ev
    return ev


def job_update(job_id: str, progress: DownloadProgress) -> None:
    with JOBS_LOCK:
        st = JOBS.get(job_id)
        if st:
            st["progress"] = progress.to_dict()


def job_finish(job_id: str, status: str, **extra: Any) -> None:
    with JOBS_LOCK:
        st = JOBS.get(job_id)
        if st:
            st.update(extra)
            st["status"] = status
            st["done"] = True
        CANCEL_EVENTS.pop(job_id, None)


def job_forget(job_id: str) -> None:
    with JOBS_LOCK:
        st = JOBS.get(job_id)
        if st and st.get("done"):
            JOBS.pop(job_id, None)


def _get_job(job_id: str) -> Optional[Dict[str, Any]]:
    with JOBS_LOCK:
        st = JOBS.get(job_id)
        return json.loads(json.dumps(st)) if st is not None else None


def _body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidEntity("Expected a JSON object")
    return data


def _area_from_request() -> DownloadArea:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidArea("Expected a JSON object")
    return DownloadArea.from_dict(data)


def _register_crud(app: Flask, name: str, repo: Any, prepare: Optional[Callable[[Dict[str, Any]], None]] = None,
                   on_change: Optional[Callable[[str], None]] = None) -> None:
    """list/create on /api/<name>, get/update/delete on /api/<name>/<id>."""

    def list_or_create():
        if request.method == 'GET':
            return jsonify([e.to_dict() for e in repo.list()])
        body = _body()
        if prepare:
            prepare(body)
        entity = repo.create(**body)
        return jsonify(entity.to_dict()), 201

    def one(entity_id: str):
        if request.method == 'GET':
            entity = repo.get(entity_id)
            if entity is None:
                raise EntityNotFound(repo.kind, entity_id)
            return jsonify(entity.to_dict())
        if request.method == 'DELETE':
            repo.delete(entity_id)
            if on_change:
                on_change(entity_id)
            return jsonify({"deleted": entity_id})
        body = _body()
        if prepare:
            prepare(body)
        entity = repo.update(entity_id, **body)
        if on_change:
            on_change(entity_id)
        return jsonify(entity.to_dict())

    app.add_url_rule(f'/api/{name}', endpoint=f'{name}_collection', view_func=list_or_create, methods=['GET', 'POST'])
    app.add_url_rule(f'/api/{name}/<entity_id>', endpoint=f'{name}_item', view_func=one,
                     methods=['GET', 'PATCH', 'DELETE'])


def create_app(
    settings: Optional[Settings] = None,
    manager: Optional[StoreManager] = None,
    session: Optional[requests.Session] = None,
) -> Flask:
    settings = settings or Settings.from_env()
    manager = manager or StoreManager(settings.store)

    app = Flask(__name__)
    app.config.setdefault('PROGRESS_POLL_S', 0.5)

    offline = OfflineMapService(manager, settings.offline, session=session)
    routes = RouteRepository(manager)
    waypoints = WaypointRepository(manager)
    projects = ProjectRepository(manager)
    elevation = ElevationService(manager, settings.elevation, session=session)
    app.extensions['trakke'] = {
        "manager": manager,
        "offline": offline,
        "routes": routes,
        "waypoints": waypoints,
        "projects": projects,
        "elevation": elevation,
    }

    # -------------------- error mapping --------------------
    @app.errorhandler(AreaTooLarge)
    def _too_large(e: AreaTooLarge):
        return jsonify({"error": str(e), "tile_count": e.tile_count, "max_tiles": e.max_tiles}), 400

    @app.errorhandler(InvalidArea)
    @app.errorhandler(InvalidEntity)
    def _bad_request(e: Exception):
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(EntityNotFound)
    def _not_found(e: EntityNotFound):
        return jsonify({"error": str(e)}), 404

    @app.errorhandler(StoreError)
    @app.errorhandler(ElevationUnavailable)
    def _unavailable(e: Exception):
        log.warning('[API] %s', e)
        return jsonify({"error": str(e)}), 503

    # -------------------- offline areas --------------------
    @app.route('/api/areas/estimate', methods=['POST'])
    def api_area_estimate():
        return jsonify(offline.estimate(_area_from_request()).to_dict())

    @app.route('/api/areas/download', methods=['POST'])
    def api_area_download():
        area = _area_from_request()
        est = offline.estimate(area)
        if est.too_large:
            raise AreaTooLarge(est.tile_count, est.max_tiles)

        job_id = uuid.uuid4().hex
        cancel = job_init(job_id, est.tile_count)

        def run() -> None:
            try:
                done = offline.download_area(area, on_progress=lambda p: job_update(job_id, p), cancel_event=cancel)
                job_finish(job_id, 'done', area=done.to_dict())
            except DownloadCancelled as e:
                if e.progress is not None:
                    job_update(job_id, e.progress)
                job_finish(job_id, 'cancelled')
            except Exception as e:
                log.exception('[API] download job %s failed', job_id)
                job_finish(job_id, 'error', error=str(e))

        threading.Thread(target=run, name=f'download-{job_id[:8]}', daemon=True).start()
        log.info('[API] download job %s started (%d tiles)', job_id, est.tile_count)
        return jsonify({"job_id": job_id, "total_tiles": est.tile_count}), 202

    @app.route('/api/progress/<job_id>')
    def api_progress(job_id: str):
        if _get_job(job_id) is None:
            return jsonify({"error": f"Unknown job {job_id}"}), 404
        poll_s = float(app.config['PROGRESS_POLL_S'])

        def event_stream():
            # Emit progress until done
            while True:
                st = _get_job(job_id) or {"done": True, "status": "unknown"}
                yield f"data: {json.dumps(st)}\n\n"
                if st.get('done'):
                    # Finished jobs live until their final state has been streamed once
                    job_forget(job_id)
                    break
                time.sleep(poll_s)
        return Response(event_stream(), headers=SSE_HEADERS)

    @app.route('/api/progress/<job_id>/cancel', methods=['POST'])
    def api_cancel(job_id: str):
        with JOBS_LOCK:
            ev = CANCEL_EVENTS.get(job_id)
            known = job_id in JOBS
        if not known:
            return jsonify({"error": f"Unknown job {job_id}"}), 404
        if ev is not None:
            ev.set()
            log.info('[API] cancel requested for job %s', job_id)
        return jsonify({"job_id": job_id, "cancel_requested": ev is not None})

    @app.route('/api/areas')
    def api_areas():
        return jsonify([a.to_dict() for a in offline.get_downloaded_areas()])

    @app.route('/api/areas/<area_id>', methods=['DELETE'])
    def api_area_delete(area_id: str):
        offline.delete_area(area_id)
        return jsonify({"deleted": area_id})

    @app.route('/api/storage')
    def api_storage():
        return jsonify(offline.get_storage_usage().to_dict())

    @app.route('/tiles/<int:z>/<int:x>/<int:y>.png')
    def tile(z: int, x: int, y: int):
        rec = offline.get_tile(z, x, y)
        if rec is None:
            return jsonify({"error": "Tile not cached"}), 404
        return Response(rec.data, mimetype='image/png', headers={'Cache-Control': 'max-age=86400'})

    # -------------------- user data --------------------
    def _prepare_route(body: Dict[str, Any]) -> None:
        coords = body.get('coordinates')
        if coords and 'distance' not in body:
            try:
                body['distance'] = calculate_distance([(float(c[0]), float(c[1])) for c in coords])
            except (TypeError, ValueError, IndexError):
                raise InvalidEntity("Invalid coordinates")

    def _route_changed(route_id: str) -> None:
        elevation.clear_cached_profile(route_id)

    _register_crud(app, 'routes', routes, prepare=_prepare_route, on_change=_route_changed)
    _register_crud(app, 'waypoints', waypoints)
    _register_crud(app, 'projects', projects)

    @app.route('/api/routes/<route_id>/gpx')
    def api_route_gpx(route_id: str):
        route = routes.get(route_id)
        if route is None:
            raise EntityNotFound('route', route_id)
        wps = [wp for wp in (waypoints.get(w) for w in route.waypoints) if wp is not None]
        xml = route_to_gpx(route, wps)
        filename = f"{route.name.replace(' ', '_')}.gpx"
        return Response(xml, mimetype='application/gpx+xml',
                        headers={'Content-Disposition': f'attachment; filename="{filename}"'})

    @app.route('/api/routes/import_gpx', methods=['POST'])
    def api_import_gpx():
        f = request.files.get('file')
        if f is not None:
            raw = f.read()
            fallback_name = Path(f.filename or 'route.gpx').stem
        else:
            raw = request.get_data()
            fallback_name = 'Imported route'
        if not raw:
            return jsonify({"error": "No GPX uploaded"}), 400
        try:
            gpx = read_gpx(raw)
        except (gpxpy.gpx.GPXException, UnicodeDecodeError) as e:
            return jsonify({"error": f"Invalid GPX: {e}"}), 400
        coords = gpx_coordinates(gpx)
        if len(coords) < 2:
            return jsonify({"error": "GPX must contain at least two points"}), 400
        name = request.form.get('name') or gpx_title(gpx) or fallback_name
        route = routes.create(name=name, coordinates=coords, distance=calculate_distance(coords))
        log.info('[UPLOAD] imported %s (%d points)', route.id, len(coords))
        return jsonify(route.to_dict()), 201

    @app.route('/api/routes/<route_id>/elevation')
    def api_route_elevation(route_id: str):
        route = routes.get(route_id)
        if route is None:
            raise EntityNotFound('route', route_id)
        profile = elevation.get_elevation_profile(route.id, route.coordinates)
        out = profile.to_dict()
        out['distances'] = cumulative_distances([(p['x'], p['y']) for p in profile.points])
        return jsonify(out)

    @app.route('/api/preferences', methods=['GET', 'PUT'])
    def api_preferences():
        if request.method == 'GET':
            saved = manager.get_data('preferences')
            return jsonify(saved[-1] if saved else {})
        body = _body()
        manager.save_data('preferences', body)
        return jsonify(body)

    return app


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format='[%(levelname)s] %(message)s')
    port = int(os.environ.get('PORT', 5000))
    create_app().run(host='0.0.0.0', port=port, debug=False, use_reloader=False)
