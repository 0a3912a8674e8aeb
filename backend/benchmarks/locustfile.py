from locust import HttpUser, task, between

PROCEDURE = {
    "name": "Plate assay",
    "blocks": [
        {
            "type": "sample_variable",
            "id": "declare-sample",
            "fields": {"NAME": "lysate"},
            "next": {
                "type": "mixing_step",
                "id": "mix",
                "fields": {"SAMPLE": "lysate", "DURATION": 10, "DURATION_UNIT": "minutes"},
                "next": {
                    "type": "centrifuge_step",
                    "id": "spin",
                    "fields": {"SAMPLE": "lysate", "SPEED": 12000, "DURATION": 5},
                    "next": {
                        "type": "measurement_step",
                        "id": "read",
                        "fields": {"SAMPLE": "lysate", "RESULT_VAR": "od600", "DURATION": 3},
                    },
                },
            },
        }
    ],
}


class AnalysisUser(HttpUser):
    wait_time = between(1, 3)

    def on_start(self):
        self.client.put("/api/protocol-analysis/procedures/load-test", json=PROCEDURE)

    @task(3)
    def analyze_stored(self):
        self.client.post("/api/protocol-analysis/load-test/analyze", json={"analysis_type": "full"})

    @task(1)
    def analyze_document(self):
        self.client.post("/api/protocol-analysis/analyze", json={"document": PROCEDURE})
