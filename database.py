import sqlite3
import json
import logging
import pandas as pd
from datetime import datetime
from pathlib import Path
from typing import List, Dict, Optional

from skinscan.catalog import class_name
from skinscan.results import PatientData, Prediction, ScanResult

logger = logging.getLogger(__name__)


class ScanDatabase:
    """Database manager for completed skin lesion scans"""

    def __init__(self, db_path="data/skin_scans.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_database(self):
        """Create tables if they don't exist"""
        with self._connect() as conn:
            conn.executescript('''
                CREATE TABLE IF NOT EXISTS scan_results (
                    id VARCHAR(255) PRIMARY KEY,
                    owner VARCHAR(255) NOT NULL,
                    patient_first_name VARCHAR(100) NOT NULL,
                    patient_id VARCHAR(100) NOT NULL,
                    patient_username VARCHAR(100),
                    patient_gender VARCHAR(10),
                    patient_age INTEGER,
                    image_data TEXT NOT NULL,
                    is_valid_skin_image BOOLEAN DEFAULT 1,
                    top_prediction_class INTEGER NOT NULL,
                    top_prediction_probability FLOAT NOT NULL,
                    all_predictions TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_owner ON scan_results(owner);
                CREATE INDEX IF NOT EXISTS idx_created ON scan_results(created_at);
            ''')

    def save_scan(self, scan: ScanResult, owner: str) -> str:
        """
        Persist a completed scan for ``owner``.

        Rejected scans carry no predictions and are never stored.

        Returns:
            The stored scan id
        """
        top = scan.top_prediction
        if top is None:
            raise ValueError(f"Scan {scan.id} was rejected; only completed scans are stored")

        age = int(scan.patient.age) if scan.patient.age.strip().isdigit() else None
        try:
            with self._connect() as conn:
                conn.execute('''
                    INSERT INTO scan_results
                    (id, owner, patient_first_name, patient_id, patient_username,
                     patient_gender, patient_age, image_data, is_valid_skin_image,
                     top_prediction_class, top_prediction_probability, all_predictions,
                     created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    scan.id,
                    owner,
                    scan.patient.first_name,
                    scan.patient.patient_id,
                    scan.patient.username,
                    scan.patient.gender,
                    age,
                    scan.image_data_url,
                    scan.is_valid_skin_image,
                    top.class_id,
                    round(top.probability, 4),
                    json.dumps([p.to_dict() for p in scan.predictions]),
                    scan.timestamp.isoformat(),
                ))
        except sqlite3.Error as e:
            logger.error(f"Error saving scan {scan.id}: {e}", exc_info=True)
            raise
        logger.info(f"Saved scan {scan.id} for {owner} ({top.class_name})")
        return scan.id

    def list_scans(self, owner: str) -> List[ScanResult]:
        """Get all scans for ``owner``, newest first"""
        with self._connect() as conn:
            cursor = conn.execute(
                'SELECT * FROM scan_results WHERE owner = ? ORDER BY created_at DESC',
                (owner,)
            )
            return [self._row_to_scan(row) for row in cursor.fetchall()]

    def get_scan(self, scan_id: str, owner: str) -> Optional[ScanResult]:
        with self._connect() as conn:
            row = conn.execute(
                'SELECT * FROM scan_results WHERE id = ? AND owner = ?',
                (scan_id, owner)
            ).fetchone()
        return self._row_to_scan(row) if row else None

    def delete_scan(self, scan_id: str, owner: str) -> bool:
        """Delete one scan; returns False if it does not exist for this owner"""
        with self._connect() as conn:
            cursor = conn.execute(
                'DELETE FROM scan_results WHERE id = ? AND owner = ?',
                (scan_id, owner)
            )
            deleted = cursor.rowcount > 0
        if not deleted:
            logger.warning(f"Scan {scan_id} not found for {owner}")
        return deleted

    def delete_all_scans(self, owner: str) -> int:
        """Clear the scan history of ``owner``; returns the number of deleted scans"""
        with self._connect() as conn:
            cursor = conn.execute('DELETE FROM scan_results WHERE owner = ?', (owner,))
            count = cursor.rowcount
        logger.info(f"Deleted {count} scans for {owner}")
        return count

    def get_statistics(self, owner: Optional[str] = None) -> Dict:
        """Get scan counts, confidence and class distribution"""
        where, params = ('WHERE owner = ?', (owner,)) if owner else ('', ())
        with self._connect() as conn:
            basic = conn.execute(f'''
                SELECT
                    COUNT(DISTINCT patient_id) as total_patients,
                    COUNT(*) as total_scans,
                    AVG(top_prediction_probability) as avg_confidence,
                    MIN(created_at) as first_scan,
                    MAX(created_at) as last_scan
                FROM scan_results {where}
            ''', params).fetchone()

            distribution = conn.execute(f'''
                SELECT top_prediction_class, COUNT(*) as count,
                       AVG(top_prediction_probability) as avg_conf
                FROM scan_results {where}
                GROUP BY top_prediction_class
                ORDER BY count DESC, top_prediction_class
            ''', params).fetchall()

        return {
            'basic': dict(basic),
            'class_distribution': [
                {
                    'class': class_name(row['top_prediction_class']),
                    'count': row['count'],
                    'avg_confidence': row['avg_conf'],
                }
                for row in distribution
            ],
        }

    def export_to_csv(self, owner: Optional[str] = None, filename: str = None,
                      export_dir: str = "exports") -> str:
        """Export scans (optionally for one owner) to CSV; returns the file path"""
        if not filename:
            filename = f"skin_scan_export_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"

        query = '''
            SELECT
                id,
                owner,
                patient_id,
                patient_first_name,
                patient_age,
                patient_gender,
                top_prediction_class,
                top_prediction_probability,
                created_at
            FROM scan_results
        '''
        params = ()
        if owner:
            query += ' WHERE owner = ?'
            params = (owner,)
        query += ' ORDER BY created_at DESC'

        with self._connect() as conn:
            df = pd.read_sql_query(query, conn, params=params)

        df['predicted_class'] = df['top_prediction_class'].map(class_name)
        export_path = Path(export_dir) / filename
        export_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(export_path, index=False)
        logger.info(f"Exported {len(df)} scans to {export_path}")
        return str(export_path)

    @staticmethod
    def _row_to_scan(row: sqlite3.Row) -> ScanResult:
        predictions = json.loads(row['all_predictions'])
        return ScanResult(
            id=row['id'],
            timestamp=datetime.fromisoformat(row['created_at']),
            patient=PatientData(
                first_name=row['patient_first_name'],
                patient_id=row['patient_id'],
                username=row['patient_username'] or '',
                gender=row['patient_gender'] or '',
                age='' if row['patient_age'] is None else str(row['patient_age']),
            ),
            image_data_url=row['image_data'],
            is_valid_skin_image=bool(row['is_valid_skin_image']),
            predictions=tuple(Prediction.from_dict(p) for p in predictions),
        )
