"""
Submission Orchestrator Test Suite

Critical invariants tested:
    A document is signed exactly once per submission
    Transient failures are retried at most max_attempts times, with
    delays backoff_base ** attempt between them
    Faults and terminal outcomes are never retried
"""

import threading
import unittest
from unittest import mock

from lxml import etree

from nfcom import (
    Authorized,
    CertificateError,
    ConfigurationError,
    Denied,
    EndpointConfig,
    ProtocolFault,
    Rejected,
    Service,
    SoapClient,
    StructuralError,
    Submission,
    SubmissionCancelled,
    SubmissionOrchestrator,
    SubmissionState,
    TimeoutError,
    TransientServiceError,
    XmlSigner,
    decode_xml,
    verify_signature,
)
from nfcom.logging_config import SubmissionLogger, get_submission_id, submission_scope
from nfcom.soap import INUTILIZATION, RECEPTION

from tests.fixtures import (
    ACCESS_KEY,
    CNPJ,
    NFCOM_NS,
    compressed_response,
    fault_response,
    make_credential,
    plain_response,
    ret_inutilization,
    sample_document,
    soap_response,
)


class OrchestratorTestCase(unittest.TestCase):

    def setUp(self):
        self.config = EndpointConfig.for_state("PE", max_attempts=3, backoff_base=2)
        self.client = mock.Mock(spec=SoapClient)
        self.sleeps = []
        self.audit = mock.Mock(spec=SubmissionLogger)
        self.orchestrator = SubmissionOrchestrator(
            self.config,
            client=self.client,
            sleep=self.sleeps.append,
            audit=self.audit,
        )
        self.credential = make_credential()

    def submit(self, **kwargs):
        return self.orchestrator.submit(sample_document(), self.credential, **kwargs)


class TestSubmissionOutcomes(OrchestratorTestCase):

    def test_authorized_first_attempt(self):
        self.client.send.return_value = compressed_response("100", "Autorizado o uso da NFCom", protocol=True)

        trace = Submission()
        outcome = self.submit(trace=trace)

        self.assertIsInstance(outcome, Authorized)
        self.assertEqual(outcome.access_key, ACCESS_KEY)
        self.assertIsNotNone(outcome.confirmed_document)
        self.assertEqual(self.client.send.call_count, 1)
        self.assertEqual(self.sleeps, [])
        self.assertEqual(trace.state, SubmissionState.AUTHORIZED)

    def test_sent_envelope(self):
        self.client.send.return_value = plain_response("225", "Rejeicao")

        self.submit()

        envelope, action, credential, url = self.client.send.call_args[0]
        self.assertEqual(action, RECEPTION.action)
        self.assertIs(credential, self.credential)
        self.assertEqual(url, self.config.url_for(Service.RECEPTION))

        message = etree.fromstring(envelope)[0][0]
        signed_xml = decode_xml(message.text)
        self.assertTrue(verify_signature(signed_xml))
        self.assertNotIn("\n", signed_xml)

    def test_denied_not_retried(self):
        self.client.send.return_value = compressed_response("110", "Uso Denegado")

        trace = Submission()
        outcome = self.submit(trace=trace)

        self.assertIsInstance(outcome, Denied)
        self.assertEqual(self.client.send.call_count, 1)
        self.assertEqual(trace.state, SubmissionState.DENIED)

    def test_rejected_not_retried(self):
        self.client.send.return_value = plain_response("999", "Rejeicao")

        self.assertIsInstance(self.submit(), Rejected)
        self.assertEqual(self.client.send.call_count, 1)

    def test_fault_not_retried(self):
        self.client.send.return_value = fault_response()

        with self.assertRaises(ProtocolFault):
            self.submit()
        self.assertEqual(self.client.send.call_count, 1)
        self.assertEqual(self.sleeps, [])

    def test_protocol_error_propagates(self):
        self.client.send.side_effect = ProtocolFault("TLS handshake failed")

        with self.assertRaises(ProtocolFault):
            self.submit()
        self.assertEqual(self.client.send.call_count, 1)

    def test_structural_error_propagates(self):
        self.client.send.return_value = soap_response("garbage!!")

        with self.assertRaises(StructuralError):
            self.submit()
        self.assertEqual(self.client.send.call_count, 1)

    def test_missing_target_fails_before_sending(self):
        with self.assertRaises(StructuralError):
            self.orchestrator.submit(f'<NFCom xmlns="{NFCOM_NS}"/>', self.credential)
        self.client.send.assert_not_called()

    def test_missing_reception_url(self):
        config = EndpointConfig(state="SP")
        with self.assertRaises(ConfigurationError):
            self.submit(endpoint_config=config)
        self.client.send.assert_not_called()

    def test_expired_credential_checked_at_submission(self):
        credential = mock.Mock(wraps=self.credential)
        credential.check_validity.side_effect = CertificateError("Certificate expired")

        with self.assertRaises(CertificateError):
            self.orchestrator.submit(sample_document(), credential)
        self.client.send.assert_not_called()


class TestRetry(OrchestratorTestCase):

    def test_transient_then_authorized(self):
        self.client.send.side_effect = [
            compressed_response("108", "Servico Paralisado Momentaneamente"),
            compressed_response("100", "Autorizado o uso da NFCom", protocol=True),
        ]

        outcome = self.submit()

        self.assertIsInstance(outcome, Authorized)
        self.assertEqual(self.client.send.call_count, 2)
        self.assertEqual(self.sleeps, [2])

    def test_exhausts_exactly_max_attempts(self):
        self.client.send.return_value = compressed_response("108", "Servico Paralisado Momentaneamente")

        with self.assertRaises(TransientServiceError) as ctx:
            self.submit()

        self.assertEqual(self.client.send.call_count, 3)
        self.assertEqual(self.sleeps, [2, 4])
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertEqual(ctx.exception.status_code, "108")
        self.audit.retries_exhausted.assert_called_once()

    def test_backoff_follows_base(self):
        config = EndpointConfig.for_state("PE", max_attempts=4, backoff_base=3)
        self.client.send.side_effect = TimeoutError("read timeout")

        with self.assertRaises(TimeoutError) as ctx:
            self.submit(endpoint_config=config)

        self.assertEqual(self.client.send.call_count, 4)
        self.assertEqual(self.sleeps, [3, 9, 27])
        self.assertEqual(ctx.exception.attempts, 4)

    def test_single_attempt_never_sleeps(self):
        config = EndpointConfig.for_state("PE", max_attempts=1)
        self.client.send.side_effect = TimeoutError("read timeout")

        with self.assertRaises(TimeoutError):
            self.submit(endpoint_config=config)
        self.assertEqual(self.client.send.call_count, 1)
        self.assertEqual(self.sleeps, [])

    def test_http_503_retried(self):
        self.client.send.side_effect = [
            TransientServiceError("Authority temporarily unavailable (HTTP 503)", status_code="503"),
            plain_response("999", "Rejeicao"),
        ]

        self.assertIsInstance(self.submit(), Rejected)
        self.assertEqual(self.client.send.call_count, 2)

    def test_signed_once_and_same_envelope_resent(self):
        signer = mock.Mock(wraps=XmlSigner())
        orchestrator = SubmissionOrchestrator(
            self.config, client=self.client, signer=signer, sleep=self.sleeps.append, audit=self.audit
        )
        self.client.send.return_value = compressed_response("108", "Servico Paralisado Momentaneamente")

        with self.assertRaises(TransientServiceError):
            orchestrator.submit(sample_document(), self.credential)

        self.assertEqual(signer.sign.call_count, 1)
        envelopes = {c[0][0] for c in self.client.send.call_args_list}
        self.assertEqual(len(envelopes), 1)

    def test_trace_records_every_attempt(self):
        self.client.send.side_effect = [
            TimeoutError("read timeout"),
            compressed_response("110", "Uso Denegado"),
        ]

        trace = Submission()
        self.submit(trace=trace)

        self.assertEqual([o.kind.value for o in trace.outcomes], ["TRANSIENT_FAILURE", "DENIED"])
        self.assertEqual(trace.retry.delays, [2])

    def test_trace_kept_when_retries_exhausted(self):
        self.client.send.return_value = compressed_response("108", "Servico Paralisado Momentaneamente")
        trace = Submission()

        with self.assertRaises(TransientServiceError):
            self.submit(trace=trace)

        self.assertEqual(len(trace.outcomes), 3)
        self.assertEqual(trace.state, SubmissionState.TRANSIENT_FAILURE)
        self.assertIsNotNone(trace.envelope)


class TestCancellation(OrchestratorTestCase):

    def test_cancel_before_retry(self):
        cancel = threading.Event()
        cancel.set()
        self.client.send.side_effect = TimeoutError("read timeout")

        with self.assertRaises(SubmissionCancelled):
            self.submit(cancel=cancel)
        self.assertEqual(self.client.send.call_count, 1)

    def test_cancel_during_backoff(self):
        cancel = mock.Mock(spec=threading.Event)
        cancel.is_set.side_effect = [False, True]
        self.client.send.side_effect = TimeoutError("read timeout")

        with self.assertRaises(SubmissionCancelled):
            self.submit(cancel=cancel)

        cancel.wait.assert_called_once_with(2)
        self.assertEqual(self.client.send.call_count, 1)

    def test_unset_event_waits_and_retries(self):
        cancel = mock.Mock(spec=threading.Event)
        cancel.is_set.return_value = False
        self.client.send.side_effect = [
            TimeoutError("read timeout"),
            compressed_response("100", "Autorizado o uso da NFCom", protocol=True),
        ]

        self.assertIsInstance(self.submit(cancel=cancel), Authorized)
        cancel.wait.assert_called_once_with(2)
        self.assertEqual(self.sleeps, [])


class TestIsolation(OrchestratorTestCase):

    def test_submission_id_restored_after_submit(self):
        seen = []

        def send(*args):
            seen.append(get_submission_id())
            return plain_response("225", "Rejeicao")

        self.client.send.side_effect = send

        with submission_scope("outer"):
            self.submit()
            self.assertEqual(get_submission_id(), "outer")
        self.assertEqual(seen, [f"NFCom{ACCESS_KEY}"])

    def test_submission_id_restored_after_error(self):
        self.client.send.return_value = fault_response()

        with submission_scope("outer"):
            with self.assertRaises(ProtocolFault):
                self.submit()
            self.assertEqual(get_submission_id(), "outer")

    def test_concurrent_submissions_keep_separate_traces(self):
        barrier = threading.Barrier(2, timeout=5)

        def send(*args):
            barrier.wait()
            return compressed_response("100", "Autorizado o uso da NFCom", protocol=True)

        self.client.send.side_effect = send
        traces = [Submission(), Submission()]
        outcomes = []
        threads = [
            threading.Thread(target=lambda t=trace: outcomes.append(self.submit(trace=t)))
            for trace in traces
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        self.assertEqual(len(outcomes), 2)
        self.assertIsNot(traces[0], traces[1])
        for trace in traces:
            self.assertEqual(len(trace.outcomes), 1)
            self.assertEqual(trace.state, SubmissionState.AUTHORIZED)


class TestAuxiliaryServices(OrchestratorTestCase):

    def test_service_status(self):
        self.client.call.return_value = soap_response(
            f'<retConsStatServNFCom xmlns="{NFCOM_NS}" versao="1.00">'
            "<cStat>107</cStat><xMotivo>Servico em Operacao</xMotivo></retConsStatServNFCom>"
        )

        status = self.orchestrator.service_status(self.credential)

        self.assertTrue(status.online)
        request, credential, url = self.client.call.call_args[0]
        self.assertEqual(url, self.config.url_for(Service.STATUS))
        self.assertEqual(request.element.tag, f"{{{NFCOM_NS}}}consStatServNFCom")
        self.assertEqual(request.element.findtext(f"{{{NFCOM_NS}}}tpAmb"), "2")
        self.assertEqual(request.element.findtext(f"{{{NFCOM_NS}}}xServ"), "STATUS")

    def test_query_single_attempt(self):
        self.client.call.side_effect = TimeoutError("read timeout")

        with self.assertRaises(TimeoutError):
            self.orchestrator.query(ACCESS_KEY, self.credential)
        self.assertEqual(self.client.call.call_count, 1)

    def test_query_request(self):
        self.client.call.return_value = soap_response(
            f'<retConsSitNFCom xmlns="{NFCOM_NS}" versao="1.00">'
            "<cStat>101</cStat><xMotivo>Cancelamento homologado</xMotivo></retConsSitNFCom>"
        )

        self.orchestrator.query(ACCESS_KEY, self.credential)

        request = self.client.call.call_args[0][0]
        self.assertEqual(request.element.findtext(f"{{{NFCOM_NS}}}chNFCom"), ACCESS_KEY)


class TestVoidRange(OrchestratorTestCase):

    def void(self, justification="Falha no sistema emissor", **kwargs):
        return self.orchestrator.void_range(1, 10, 12, justification, self.credential, year=2024, **kwargs)

    def test_voided(self):
        self.client.call.return_value = soap_response(ret_inutilization())

        result = self.void()

        self.assertTrue(result.voided)
        self.assertEqual(result.code, "102")
        self.assertEqual(result.protocol_number, "326240000000099")
        self.assertEqual(self.client.call.call_count, 1)

    def test_request(self):
        self.client.call.return_value = soap_response(ret_inutilization())

        self.void()

        request, credential, url = self.client.call.call_args[0]
        self.assertIs(request.operation, INUTILIZATION)
        self.assertEqual(url, self.config.url_for(Service.INUTILIZATION))
        self.assertEqual(request.element.tag, f"{{{NFCOM_NS}}}inutNFCom")
        self.assertEqual(request.element.get("versao"), "1.00")

        info = request.element.find(f"{{{NFCOM_NS}}}infInut")
        self.assertEqual(info.get("Id"), f"ID2624{CNPJ}62001000000010000000012")
        fields = {etree.QName(child).localname: child.text for child in info}
        self.assertEqual(fields, {
            "tpAmb": "2",
            "cUF": "26",
            "ano": "24",
            "CNPJ": CNPJ,
            "mod": "62",
            "serie": "1",
            "nNFIni": "10",
            "nNFFin": "12",
            "xJust": "Falha no sistema emissor",
        })
        self.assertTrue(verify_signature(request.element))

    def test_not_voided(self):
        self.client.call.return_value = soap_response(ret_inutilization("241", "Rejeicao: Um numero da faixa ja foi utilizado"))

        result = self.void()

        self.assertFalse(result.voided)
        self.assertEqual(result.code, "241")

    def test_short_justification_rejected_before_sending(self):
        with self.assertRaises(StructuralError):
            self.void("Erro")
        with self.assertRaises(StructuralError):
            self.void("   curta   demais  ")
        self.client.call.assert_not_called()

    def test_invalid_range_rejected(self):
        for series, first, last in ((1, 12, 10), (1, 0, 5), (1000, 1, 2), (1, 1, 1_000_000_000)):
            with self.assertRaises(StructuralError, msg=(series, first, last)):
                self.orchestrator.void_range(series, first, last, "Falha no sistema emissor", self.credential)
        self.client.call.assert_not_called()

    def test_explicit_cnpj_formatting_stripped(self):
        self.client.call.return_value = soap_response(ret_inutilization())

        self.void(cnpj="98.765.432/0001-10")

        request = self.client.call.call_args[0][0]
        self.assertEqual(request.element.findtext(f".//{{{NFCOM_NS}}}CNPJ"), "98765432000110")

    def test_missing_cnpj(self):
        credential = make_credential(common_name="EMPRESA SEM DOCUMENTO")

        with self.assertRaises(ConfigurationError):
            self.orchestrator.void_range(1, 10, 12, "Falha no sistema emissor", credential)
        self.client.call.assert_not_called()

    def test_missing_url(self):
        orchestrator = SubmissionOrchestrator(EndpointConfig(state="SP"), client=self.client, audit=self.audit)

        with self.assertRaises(ConfigurationError):
            orchestrator.void_range(1, 10, 12, "Falha no sistema emissor", self.credential)
        self.client.call.assert_not_called()


if __name__ == "__main__":
    unittest.main()
